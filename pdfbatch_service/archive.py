"""ZIP assembly for rendered documents."""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import PurePosixPath
import time
from typing import List, Optional, Set, Tuple
import zipfile

from .models import ArchiveEntry

logger = logging.getLogger(__name__)


class ArchiveAssembler:
    """
    Collects named payloads and writes them into one ZIP archive.

    Entry names are unique within an archive, compared case-insensitively so
    the archive extracts cleanly on case-insensitive filesystems. A repeated
    name gets a numeric suffix before its extension (`a.pdf`, `a_2.pdf`,
    `a_3.pdf`) instead of overwriting the earlier entry.
    """

    def __init__(
        self,
        compression: int = zipfile.ZIP_DEFLATED,
        date_time: Optional[Tuple[int, int, int, int, int, int]] = None,
    ):
        self.compression = compression
        # One timestamp for every entry keeps equal inputs byte-identical.
        self.date_time = date_time or tuple(time.localtime()[:6])
        self._entries: List[ArchiveEntry] = []
        self._taken: Set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def names(self) -> List[str]:
        return [entry.name for entry in self._entries]

    def _unique_name(self, name: str) -> str:
        if name.casefold() not in self._taken:
            return name
        path = PurePosixPath(name)
        stem, suffix = path.stem, path.suffix
        counter = 2
        while True:
            candidate = f"{stem}_{counter}{suffix}"
            if candidate.casefold() not in self._taken:
                return candidate
            counter += 1

    def add(self, name: str, payload: bytes) -> str:
        """Record an entry and return the name it was stored under."""
        final_name = self._unique_name(name)
        if final_name != name:
            logger.info("Archive name %s already used; storing as %s", name, final_name)
        self._taken.add(final_name.casefold())
        self._entries.append(ArchiveEntry(name=final_name, payload=payload))
        return final_name

    def finalize(self) -> bytes:
        """Serialize every recorded entry, in insertion order. Zero entries yield a valid empty ZIP."""
        buffer = BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=self.compression) as archive:
            for entry in self._entries:
                info = zipfile.ZipInfo(entry.name, date_time=self.date_time)
                info.compress_type = self.compression
                archive.writestr(info, entry.payload)
        return buffer.getvalue()
