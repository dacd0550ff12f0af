"""Tests for the shared-asset cache."""

from __future__ import annotations

import base64
import threading
import time

import pytest
import requests

from pdfbatch_service import asset_cache as asset_cache_module
from pdfbatch_service.asset_cache import AssetCache, make_http_fetcher, resolve_mime_type
from pdfbatch_service.exceptions import AssetFetchError, AssetFetchTimeout

from .conftest import LOGO_URL, FakeFetcher, make_png


def test_two_gets_within_ttl_use_one_fetch(asset_cache, fetcher, clock) -> None:
    first = asset_cache.get(LOGO_URL)
    clock.advance(60)
    second = asset_cache.get(LOGO_URL)

    assert first is second
    assert fetcher.calls == [LOGO_URL]


def test_get_after_ttl_refetches_exactly_once(asset_cache, fetcher, clock, settings) -> None:
    asset_cache.get(LOGO_URL)
    clock.advance(settings.asset_ttl_seconds + 1)

    refreshed = asset_cache.get(LOGO_URL)
    asset_cache.get(LOGO_URL)

    assert len(fetcher.calls) == 2
    assert refreshed.fetched_at == clock.now


def test_entry_is_reused_exactly_at_ttl_boundary(asset_cache, fetcher, clock, settings) -> None:
    asset_cache.get(LOGO_URL)
    clock.advance(settings.asset_ttl_seconds)
    asset_cache.get(LOGO_URL)

    assert len(fetcher.calls) == 1


def test_concurrent_cold_start_triggers_single_fetch(settings, clock) -> None:
    slow_fetcher = FakeFetcher(delay=0.05)
    cache = AssetCache(settings, fetcher=slow_fetcher, clock=clock)
    results = []

    def _get() -> None:
        results.append(cache.get_data_uri(LOGO_URL))

    threads = [threading.Thread(target=_get) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(slow_fetcher.calls) == 1
    assert len(set(results)) == 1


def test_data_uri_embeds_base64_payload(asset_cache) -> None:
    data_uri = asset_cache.get_data_uri(LOGO_URL)

    prefix = "data:image/png;base64,"
    assert data_uri.startswith(prefix)
    assert base64.b64decode(data_uri[len(prefix):]) == make_png()


def test_cold_failure_raises(asset_cache, fetcher) -> None:
    fetcher.error = AssetFetchError("boom", LOGO_URL, status_code=503)

    with pytest.raises(AssetFetchError) as excinfo:
        asset_cache.get(LOGO_URL)
    assert excinfo.value.status_code == 503


def test_stale_copy_served_when_refresh_fails(asset_cache, fetcher, clock, settings) -> None:
    original = asset_cache.get(LOGO_URL)
    clock.advance(settings.asset_ttl_seconds + 1)
    fetcher.error = AssetFetchTimeout("slow", LOGO_URL)

    assert asset_cache.get(LOGO_URL) is original
    assert len(fetcher.calls) == 2


def test_stale_copy_not_served_when_disabled(fetcher, clock, settings) -> None:
    strict = settings.model_copy(update={"asset_serve_stale_on_error": False})
    cache = AssetCache(strict, fetcher=fetcher, clock=clock)
    cache.get(LOGO_URL)
    clock.advance(strict.asset_ttl_seconds + 1)
    fetcher.error = AssetFetchError("gone", LOGO_URL, status_code=404)

    with pytest.raises(AssetFetchError):
        cache.get(LOGO_URL)


def test_clear_forces_refetch(asset_cache, fetcher) -> None:
    asset_cache.get(LOGO_URL)
    asset_cache.clear()
    asset_cache.get(LOGO_URL)

    assert len(fetcher.calls) == 2


@pytest.mark.parametrize(
    "declared, payload, expected",
    [
        ("image/jpeg; charset=binary", b"not really", "image/jpeg"),
        ("application/octet-stream", make_png(), "image/png"),
        (None, make_png(), "image/png"),
        ("text/html", b"<html>blocked</html>", "image/png"),
    ],
)
def test_resolve_mime_type(declared, payload, expected) -> None:
    assert resolve_mime_type(declared, payload) == expected


class _FakeResponse:
    def __init__(
        self,
        status_code: int,
        content: bytes = b"",
        content_type: str = "image/png",
        chunk_delay: float = 0.0,
        chunk_size: int = 0,
    ):
        self.status_code = status_code
        self.ok = 200 <= status_code < 400
        self.content = content
        self.headers = {"content-type": content_type}
        self.chunk_delay = chunk_delay
        self.chunk_size = chunk_size
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def iter_content(self, chunk_size=1):
        size = self.chunk_size or len(self.content) or 1
        for start in range(0, len(self.content), size):
            time.sleep(self.chunk_delay)
            yield self.content[start:start + size]


def test_http_fetcher_maps_timeout(monkeypatch, settings) -> None:
    def _raise_timeout(*args, **kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(asset_cache_module.requests, "get", _raise_timeout)

    with pytest.raises(AssetFetchTimeout):
        make_http_fetcher(settings)(LOGO_URL)


def test_http_fetcher_maps_network_error(monkeypatch, settings) -> None:
    def _raise_connection(*args, **kwargs):
        raise requests.ConnectionError("dns failure")

    monkeypatch.setattr(asset_cache_module.requests, "get", _raise_connection)

    with pytest.raises(AssetFetchError) as excinfo:
        make_http_fetcher(settings)(LOGO_URL)
    assert not isinstance(excinfo.value, AssetFetchTimeout)


def test_http_fetcher_rejects_non_2xx(monkeypatch, settings) -> None:
    monkeypatch.setattr(asset_cache_module.requests, "get", lambda *a, **k: _FakeResponse(403))

    with pytest.raises(AssetFetchError) as excinfo:
        make_http_fetcher(settings)(LOGO_URL)
    assert excinfo.value.status_code == 403


def test_http_fetcher_sends_browser_headers_and_timeout(monkeypatch, settings) -> None:
    seen = {}

    def _get(url, headers=None, timeout=None, stream=False):
        seen.update(url=url, headers=headers, timeout=timeout, stream=stream)
        return _FakeResponse(200, b"png-bytes", "image/png")

    monkeypatch.setattr(asset_cache_module.requests, "get", _get)

    payload, content_type = make_http_fetcher(settings)(LOGO_URL)

    assert payload == b"png-bytes"
    assert content_type == "image/png"
    assert seen["headers"]["User-Agent"] == settings.user_agent
    assert seen["timeout"] == (settings.asset_connect_timeout_seconds, settings.asset_fetch_timeout_seconds)
    assert seen["stream"] is True


def test_http_fetcher_gives_up_on_a_trickling_download(monkeypatch, settings) -> None:
    quick = settings.model_copy(update={"asset_fetch_timeout_seconds": 0.2})
    trickle = _FakeResponse(200, b"x" * 20, chunk_delay=0.1, chunk_size=1)
    monkeypatch.setattr(asset_cache_module.requests, "get", lambda *a, **k: trickle)

    started = time.monotonic()
    with pytest.raises(AssetFetchTimeout) as excinfo:
        make_http_fetcher(quick)(LOGO_URL)

    assert time.monotonic() - started < 1.0
    assert excinfo.value.url == LOGO_URL
    assert trickle.closed
