"""
High-level batch rendering pipeline.

`run_batch` is the main entry point used by both the HTTP API and the local
script. It keeps orchestration simple:
items in -> logo fetched once -> HTML normalized -> worker pool renders ->
results re-ordered -> ZIP bytes out.

One failing document never aborts the batch: it is recorded as a
`RenderFailure` and, depending on `FAILURE_MODE`, either left out of the
archive or replaced by a `<stem>.error.txt` marker entry.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from pathlib import PurePosixPath
import queue
import threading
import time
from typing import Callable, List, Optional, Sequence, Tuple

from . import config
from .archive import ArchiveAssembler
from .asset_cache import AssetCache, get_asset_cache
from .exceptions import AssetFetchError, EmptyBatchError, EngineStartError
from .models import BatchReport, NormalizedItem, RenderFailure, RenderItem, RenderResult, RenderSuccess
from .preprocessing import PreprocessOptions, normalize_batch
from .queue_worker import RenderWorker, SessionFactory, SharedResults
from .render_session import RenderSession

logger = logging.getLogger(__name__)

REASON_EMPTY_HTML = "empty html"
REASON_DEADLINE = "batch deadline reached before rendering"
REASON_ENGINE_UNAVAILABLE = "rendering engine unavailable"

# Extra time granted to workers for engine startup and for shutting down
# after a startup failure.
JOIN_GRACE_SECONDS = 2.0


def error_marker_name(output_name: str) -> str:
    return f"{PurePosixPath(output_name).stem}.error.txt"


class BatchOrchestrator:
    """
    Drives one batch through preprocessing, rendering and archiving.

    `asset_cache`, `session_factory` and `clock` are injectable so tests run
    without a browser, a network or a real deadline.
    """

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        asset_cache: Optional[AssetCache] = None,
        session_factory: Optional[SessionFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or config.get_settings()
        self.asset_cache = asset_cache or get_asset_cache()
        self._session_factory = session_factory or self._default_session
        self._clock = clock

    def _default_session(self, name: str) -> RenderSession:
        return RenderSession(self.settings, name=name)

    def run(self, items: Optional[Sequence[RenderItem]], logo_url: Optional[str] = None) -> BatchReport:
        """
        Render every item and return the archive with one result per item.

        Raises:
            EmptyBatchError: when `items` is missing or empty.
            EngineStartError: when no rendering session could be started.
        """
        if not items:
            raise EmptyBatchError()

        settings = self.settings
        started = self._clock()
        hard_deadline = started + settings.batch_deadline_seconds
        stop_at = hard_deadline - settings.deadline_reserve_seconds

        asset_url = logo_url or settings.logo_url
        data_uri = self._fetch_data_uri(asset_url)
        options = PreprocessOptions.from_settings(settings, extra_urls=[asset_url])
        normalized = normalize_batch(list(items), data_uri, options, settings.default_document_name)

        results = SharedResults()
        renderable: List[NormalizedItem] = []
        for item in normalized:
            if item.final_html.strip():
                renderable.append(item)
            else:
                results.record(RenderFailure(item.index, item.output_name, REASON_EMPTY_HTML))

        if renderable:
            self._render_all(renderable, results, stop_at, hard_deadline)

        ordered = self._in_input_order(normalized, results, stop_at)
        archive_bytes, ordered = self._assemble(ordered)
        report = BatchReport(archive_bytes=archive_bytes, results=ordered)
        logger.info(
            "Batch finished: %d items, %d rendered, %d failed, %.2fs",
            len(normalized),
            report.succeeded,
            report.failed,
            self._clock() - started,
        )
        return report

    def _fetch_data_uri(self, url: str) -> Optional[str]:
        if not url:
            return None
        try:
            return self.asset_cache.get_data_uri(url)
        except AssetFetchError as exc:
            logger.warning("Could not fetch logo %s; documents keep their original reference: %s", url, exc)
            return None

    def _render_all(
        self,
        renderable: List[NormalizedItem],
        results: SharedResults,
        stop_at: float,
        hard_deadline: float,
    ) -> None:
        """
        Render on a pool of workers, returning no later than `hard_deadline`.

        Workers stop taking new items at `stop_at`. A worker still busy at
        `hard_deadline` is abandoned: it is told to stop, and whatever it has
        not recorded by then is reported as a deadline failure.
        """
        work: "queue.Queue[NormalizedItem]" = queue.Queue()
        for item in renderable:
            work.put(item)

        stop_event = threading.Event()
        worker_count = min(self.settings.render_concurrency, len(renderable))
        workers = [
            RenderWorker(
                worker_id=i,
                work=work,
                results=results,
                session_factory=self._session_factory,
                stop_at=stop_at,
                clock=self._clock,
                stop_event=stop_event,
            )
            for i in range(worker_count)
        ]
        for worker in workers:
            worker.start()

        try:
            self._await_startup(workers)
        except EngineStartError:
            stop_event.set()
            for worker in workers:
                worker.join(timeout=JOIN_GRACE_SECONDS)
            raise

        for worker in workers:
            worker.join(timeout=max(hard_deadline - self._clock(), 0.0))
            if worker.is_alive():
                logger.error("%s still busy at the batch deadline; abandoning its item", worker.name)
                stop_event.set()

    def _await_startup(self, workers: List[RenderWorker]) -> None:
        timeout = self.settings.engine_start_timeout_seconds + JOIN_GRACE_SECONDS
        for worker in workers:
            worker.ready.wait(timeout=timeout)

        started = [w for w in workers if w.started_ok]
        if started:
            if len(started) < len(workers):
                logger.warning("Only %d of %d render sessions started", len(started), len(workers))
            return

        errors = [w.start_error for w in workers if w.start_error is not None]
        if errors:
            raise EngineStartError(str(errors[0])) from errors[0]
        raise EngineStartError("Rendering engine did not become ready in time")

    def _in_input_order(
        self, normalized: List[NormalizedItem], results: SharedResults, stop_at: float
    ) -> List[RenderResult]:
        recorded = results.snapshot()
        missing_reason = REASON_DEADLINE if self._clock() >= stop_at else REASON_ENGINE_UNAVAILABLE
        ordered: List[RenderResult] = []
        for item in normalized:
            result = recorded.get(item.index)
            if result is None:
                result = RenderFailure(item.index, item.output_name, missing_reason)
            ordered.append(result)
        return ordered

    def _assemble(self, ordered: List[RenderResult]) -> Tuple[bytes, List[RenderResult]]:
        assembler = ArchiveAssembler()
        final: List[RenderResult] = []
        for result in ordered:
            if isinstance(result, RenderSuccess):
                stored_as = assembler.add(result.name, result.pdf_bytes)
                final.append(replace(result, name=stored_as))
                continue
            if self.settings.failure_mode == "marker":
                marker = f"Rendering {result.name} failed: {result.reason}\n"
                assembler.add(error_marker_name(result.name), marker.encode("utf-8"))
            final.append(result)
        return assembler.finalize(), final


def run_batch(
    items: Sequence[RenderItem],
    settings: Optional[config.Settings] = None,
    asset_cache: Optional[AssetCache] = None,
    logo_url: Optional[str] = None,
) -> BatchReport:
    """
    Full pipeline from render items to a ZIP archive.

    Raises:
        EmptyBatchError: when no items were given.
        EngineStartError: when the rendering engine cannot be started.
    """
    orchestrator = BatchOrchestrator(settings=settings, asset_cache=asset_cache)
    return orchestrator.run(items, logo_url=logo_url)
