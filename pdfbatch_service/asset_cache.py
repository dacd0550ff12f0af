"""
Shared-asset cache for the logo injected into every document.

The cache:
 - downloads an asset once and keeps it as a data-URI-ready `CachedAsset`,
 - refreshes it when it is older than `ASSET_TTL_SECONDS`,
 - serializes refreshes so a cold start triggers a single download,
 - exposes `get_asset_cache()` for the process-wide instance.
"""

from __future__ import annotations

from io import BytesIO
import logging
from threading import Lock
import time
from typing import Callable, Dict, Optional, Tuple

from PIL import Image, UnidentifiedImageError
import requests

from . import config
from .exceptions import AssetFetchError, AssetFetchTimeout
from .models import CachedAsset

logger = logging.getLogger(__name__)

FALLBACK_MIME_TYPE = "image/png"
DOWNLOAD_CHUNK_BYTES = 64 * 1024

Fetcher = Callable[[str], Tuple[bytes, Optional[str]]]


def _sniff_mime_type(payload: bytes) -> Optional[str]:
    """Identify an image MIME type from its bytes, or None when Pillow cannot tell."""
    try:
        with Image.open(BytesIO(payload)) as image:
            return Image.MIME.get(image.format or "")
    except (UnidentifiedImageError, OSError):
        return None


def resolve_mime_type(declared: Optional[str], payload: bytes) -> str:
    """Prefer the declared image content type, then sniff the bytes."""
    if declared:
        mime = declared.split(";", 1)[0].strip().lower()
        if mime.startswith("image/"):
            return mime
    return _sniff_mime_type(payload) or FALLBACK_MIME_TYPE


def make_http_fetcher(settings: Optional[config.Settings] = None) -> Fetcher:
    """
    Build the default fetcher: a streamed `requests.get` with browser-like
    headers, abandoned once the whole download outlasts the fetch timeout.
    """
    settings = settings or config.get_settings()
    headers = {
        # Some image hosts refuse hotlinking from headless clients.
        "User-Agent": settings.user_agent,
        "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
        "Referer": settings.asset_referer,
    }
    timeout = (settings.asset_connect_timeout_seconds, settings.asset_fetch_timeout_seconds)

    def _download_asset(url: str) -> Tuple[bytes, Optional[str]]:
        # The read timeout bounds each socket read; `give_up_at` bounds the whole body.
        give_up_at = time.monotonic() + settings.asset_fetch_timeout_seconds
        try:
            with requests.get(url, headers=headers, timeout=timeout, stream=True) as resp:
                if not resp.ok:
                    raise AssetFetchError(
                        f"Asset download failed ({resp.status_code}) for {url}",
                        url,
                        status_code=resp.status_code,
                    )
                chunks = []
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                    chunks.append(chunk)
                    if time.monotonic() > give_up_at:
                        raise AssetFetchTimeout(
                            f"Asset download from {url} exceeded {settings.asset_fetch_timeout_seconds}s",
                            url,
                        )
                return b"".join(chunks), resp.headers.get("content-type")
        except requests.Timeout as exc:
            raise AssetFetchTimeout(f"Timed out downloading asset from {url}", url) from exc
        except requests.RequestException as exc:
            raise AssetFetchError(f"Could not download asset from {url}: {exc}", url) from exc

    return _download_asset


class AssetCache:
    """
    Time-bounded memo of downloaded assets keyed by URL.

    `fetcher` and `clock` are injectable so tests control the network and time.
    """

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        fetcher: Optional[Fetcher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or config.get_settings()
        self._fetch = fetcher or make_http_fetcher(self.settings)
        self._clock = clock
        self._entries: Dict[str, CachedAsset] = {}
        self._lock = Lock()

    def _fresh_entry(self, url: str) -> Optional[CachedAsset]:
        entry = self._entries.get(url)
        if entry is None or entry.is_stale(self._clock(), self.settings.asset_ttl_seconds):
            return None
        return entry

    def get(self, url: str) -> CachedAsset:
        """
        Return the cached asset for `url`, downloading it when missing or stale.

        Raises:
            AssetFetchError: when the download fails and no stale copy may be served.
        """
        entry = self._fresh_entry(url)
        if entry is not None:
            return entry

        with self._lock:
            entry = self._fresh_entry(url)
            if entry is not None:
                return entry
            stale = self._entries.get(url)
            try:
                entry = self._refresh(url)
            except AssetFetchError:
                if stale is not None and self.settings.asset_serve_stale_on_error:
                    logger.warning("Asset refresh failed for %s; serving stale copy", url)
                    return stale
                raise
            self._entries[url] = entry
            return entry

    def get_data_uri(self, url: str) -> str:
        return self.get(url).data_uri

    def _refresh(self, url: str) -> CachedAsset:
        started = time.monotonic()
        payload, declared_type = self._fetch(url)
        mime_type = resolve_mime_type(declared_type, payload)
        logger.info(
            "Fetched asset %s (%s, %d bytes) in %.2fs",
            url,
            mime_type,
            len(payload),
            time.monotonic() - started,
        )
        return CachedAsset(
            source_url=url,
            mime_type=mime_type,
            encoded_bytes=payload,
            fetched_at=self._clock(),
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_CACHE: Optional[AssetCache] = None
_CACHE_LOCK = Lock()


def get_asset_cache() -> AssetCache:
    """Return the process-wide cache, created on first access."""
    global _CACHE
    if _CACHE is not None:
        return _CACHE

    with _CACHE_LOCK:
        if _CACHE is None:
            _CACHE = AssetCache()
    return _CACHE
