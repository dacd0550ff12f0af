"""
HTML preprocessing before a document reaches the rendering engine.

The rewrite pass is a fixed sequence of independent text rules:
 1. literal: exact occurrences of a known asset URL become the data URI,
 2. pattern: the same asset referenced with another scheme
    (http, https, protocol-relative) or a query string,
 3. attribute: `<img>` tags carrying the marker attribute get their `src`
    set (or inserted) to the data URI,
 4. fonts: optional removal of external font stylesheets.

The markup is never re-serialized, so everything outside a match is kept
byte for byte and the pass is idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from . import config
from .models import NormalizedItem, RenderItem

# A tag with quoted attribute values that may themselves contain '>'.
_TAG_BODY = r"(?:[^>\"']|\"[^\"]*\"|'[^']*')*"
IMG_TAG_RE = re.compile(r"<img\b" + _TAG_BODY + r">", re.IGNORECASE)
LINK_TAG_RE = re.compile(r"<link\b" + _TAG_BODY + r">\s*", re.IGNORECASE)
SRC_ATTR_RE = re.compile(r"(\s)src\s*=\s*(?:\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)
HREF_ATTR_RE = re.compile(r"\shref\s*=\s*(?:\"([^\"]*)\"|'([^']*)'|([^\s>]+))", re.IGNORECASE)
_URL_TAIL = r"[^\"'\s<>()]*"
# A matched URL must end where the attribute value, CSS token or text ends.
_URL_END = r"(?=[\"'\s<>(),;]|$)"

PDF_SUFFIX = ".pdf"


@dataclass(frozen=True)
class PreprocessOptions:
    asset_urls: Tuple[str, ...] = ()
    marker_attribute: str = "alt"
    marker_value: str = "logo"
    strip_external_fonts: bool = False
    font_hosts: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(
        cls, settings: Optional[config.Settings] = None, extra_urls: Iterable[str] = ()
    ) -> "PreprocessOptions":
        settings = settings or config.get_settings()
        urls = list(dict.fromkeys([*extra_urls, *settings.asset_urls]))
        return cls(
            asset_urls=tuple(u for u in urls if u),
            marker_attribute=settings.logo_marker_attribute,
            marker_value=settings.logo_marker_value,
            strip_external_fonts=settings.strip_external_fonts,
            font_hosts=tuple(settings.font_hosts),
        )


def replace_literal_urls(html: str, urls: Iterable[str], data_uri: str) -> str:
    for url in urls:
        html = html.replace(url, data_uri)
    return html


def _url_variant_pattern(url: str) -> Optional[re.Pattern]:
    parts = urlsplit(url)
    if not parts.netloc:
        return None
    location = re.escape(parts.netloc + parts.path)
    return re.compile(r"(?:https?:)?//" + location + r"(?:\?" + _URL_TAIL + r")?" + _URL_END, re.IGNORECASE)


def replace_url_variants(html: str, urls: Iterable[str], data_uri: str) -> str:
    """Replace scheme-less, http/https and query-string variants of each asset URL."""
    for url in urls:
        pattern = _url_variant_pattern(url)
        if pattern is not None:
            html = pattern.sub(lambda _m: data_uri, html)
    return html


def _attribute_value(tag: str, attribute: str) -> Optional[str]:
    match = re.search(
        r"\s" + re.escape(attribute) + r"\s*=\s*(?:\"([^\"]*)\"|'([^']*)'|([^\s>]+))",
        tag,
        re.IGNORECASE,
    )
    if match is None:
        return None
    return next(group for group in match.groups() if group is not None)


def set_marked_image_src(html: str, attribute: str, marker: str, data_uri: str) -> str:
    """Point every `<img>` whose `attribute` equals `marker` at the data URI."""
    wanted = marker.strip().lower()
    new_src = f'src="{data_uri}"'

    def _rewrite(match: re.Match) -> str:
        tag = match.group(0)
        value = _attribute_value(tag, attribute)
        if value is None or value.strip().lower() != wanted:
            return tag
        if SRC_ATTR_RE.search(tag):
            return SRC_ATTR_RE.sub(lambda m: m.group(1) + new_src, tag, count=1)
        return tag[:4] + " " + new_src + tag[4:]

    return IMG_TAG_RE.sub(_rewrite, html)


def strip_font_links(html: str, font_hosts: Iterable[str]) -> str:
    """Drop `<link>` tags and CSS `@import` rules that load fonts from external hosts."""
    hosts = [h for h in font_hosts if h]
    if not hosts:
        return html

    def _is_font_link(tag: str) -> bool:
        href = HREF_ATTR_RE.search(tag)
        if href is None:
            return False
        target = next(group for group in href.groups() if group is not None)
        return any(host in target for host in hosts)

    html = LINK_TAG_RE.sub(lambda m: "" if _is_font_link(m.group(0)) else m.group(0), html)
    host_alternation = "|".join(re.escape(h) for h in hosts)
    import_re = re.compile(
        r"@import\s+(?:url\(\s*)?[\"']?" + _URL_TAIL + r"(?:" + host_alternation + r")"
        + r"[^;]*;\s*",
        re.IGNORECASE,
    )
    return import_re.sub("", html)


def normalize(html: str, data_uri: Optional[str], options: PreprocessOptions) -> str:
    """
    Apply the rewrite rules to one document.

    Without a data URI the asset rules are skipped and the document keeps its
    original, possibly remote, references.
    """
    if data_uri:
        html = replace_literal_urls(html, options.asset_urls, data_uri)
        html = replace_url_variants(html, options.asset_urls, data_uri)
        if options.marker_attribute and options.marker_value:
            html = set_marked_image_src(
                html, options.marker_attribute, options.marker_value, data_uri
            )
    if options.strip_external_fonts:
        html = strip_font_links(html, options.font_hosts)
    return html


def resolve_output_name(requested: Optional[str], default_name: str = "documento") -> str:
    """Turn a client-supplied filename into a flat archive name ending in `.pdf`."""
    name = requested.strip() if isinstance(requested, str) else ""
    # Only the last path component survives; archive entries never nest.
    name = PurePosixPath(name.replace("\\", "/")).name.strip() if name else ""
    if name in {"", ".", ".."}:
        name = default_name
    if not name.lower().endswith(PDF_SUFFIX):
        name = f"{name}{PDF_SUFFIX}"
    return name


def normalize_item(
    index: int,
    item: RenderItem,
    data_uri: Optional[str],
    options: PreprocessOptions,
    default_name: str = "documento",
) -> NormalizedItem:
    return NormalizedItem(
        index=index,
        final_html=normalize(item.html or "", data_uri, options),
        output_name=resolve_output_name(item.filename, default_name),
    )


def normalize_batch(
    items: List[RenderItem],
    data_uri: Optional[str],
    options: PreprocessOptions,
    default_name: str = "documento",
) -> List[NormalizedItem]:
    return [normalize_item(i, item, data_uri, options, default_name) for i, item in enumerate(items)]
