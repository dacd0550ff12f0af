"""Value objects shared by the batch pipeline."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class RenderItem:
    """One document of an incoming batch, exactly as the client sent it."""

    html: str
    filename: Optional[str] = None


@dataclass(frozen=True)
class NormalizedItem:
    index: int
    final_html: str
    output_name: str


@dataclass(frozen=True)
class CachedAsset:
    source_url: str
    mime_type: str
    encoded_bytes: bytes
    fetched_at: float

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.encoded_bytes).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def is_stale(self, now: float, ttl_seconds: float) -> bool:
        return now - self.fetched_at > ttl_seconds


@dataclass(frozen=True)
class RenderSuccess:
    index: int
    name: str
    pdf_bytes: bytes


@dataclass(frozen=True)
class RenderFailure:
    index: int
    name: str
    reason: str


RenderResult = Union[RenderSuccess, RenderFailure]


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    payload: bytes


@dataclass
class BatchReport:
    """Outcome of one batch: the archive plus one result per input item, in input order."""

    archive_bytes: bytes
    results: List[RenderResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if isinstance(r, RenderSuccess))

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if isinstance(r, RenderFailure))
