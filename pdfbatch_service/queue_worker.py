"""
Render worker pool.

Each worker is a thread owning exactly one `RenderSession`: it opens the
session on its own thread (Playwright sync objects are thread-bound), pulls
normalized items from a shared queue until the queue is empty or the batch
deadline is near, and always closes its session on the way out. Results are
written into a shared dict keyed by the item's original index; ordering is
restored by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import queue
import threading
from typing import Callable, Dict, Optional

from .exceptions import EngineCrashedError, EngineStartError, RenderError
from .models import NormalizedItem, RenderFailure, RenderResult, RenderSuccess
from .render_session import RenderSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], RenderSession]


@dataclass
class SharedResults:
    """Index-keyed results written concurrently by the workers."""

    by_index: Dict[int, RenderResult] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def record(self, result: RenderResult) -> None:
        with self.lock:
            self.by_index[result.index] = result

    def snapshot(self) -> Dict[int, RenderResult]:
        with self.lock:
            return dict(self.by_index)


class RenderWorker(threading.Thread):
    def __init__(
        self,
        worker_id: int,
        work: "queue.Queue[NormalizedItem]",
        results: SharedResults,
        session_factory: SessionFactory,
        stop_at: float,
        clock: Callable[[], float],
        stop_event: threading.Event,
    ):
        super().__init__(daemon=True, name=f"RenderWorker-{worker_id}")
        self.worker_id = worker_id
        self._work = work
        self._results = results
        self._session_factory = session_factory
        self._stop_at = stop_at
        self._clock = clock
        self._stop_event = stop_event
        self.ready = threading.Event()
        self.start_error: Optional[EngineStartError] = None
        self.rendered = 0
        self.crashed = False

    @property
    def started_ok(self) -> bool:
        return self.ready.is_set() and self.start_error is None

    def run(self) -> None:
        session = self._session_factory(f"render-session-{self.worker_id}")
        try:
            try:
                session.open()
            except EngineStartError as exc:
                logger.error("Worker %d: engine failed to start: %s", self.worker_id, exc)
                self.start_error = exc
                return
            finally:
                self.ready.set()
            self._drain(session)
        finally:
            session.close()

    def _drain(self, session: RenderSession) -> None:
        while not self._stop_event.is_set():
            if self._clock() >= self._stop_at:
                logger.warning("Worker %d: batch deadline near, not starting new items", self.worker_id)
                return
            try:
                item = self._work.get_nowait()
            except queue.Empty:
                return
            try:
                if not self._render_item(session, item):
                    return
            finally:
                self._work.task_done()

    def _render_item(self, session: RenderSession, item: NormalizedItem) -> bool:
        """Render and record one item. Returns False once the session is unusable."""
        try:
            pdf_bytes = session.render(item.final_html, item.index)
        except EngineCrashedError as exc:
            logger.error("Worker %d: engine crashed on item %d (%s)", self.worker_id, item.index, item.output_name)
            self._results.record(RenderFailure(item.index, item.output_name, exc.reason))
            self.crashed = True
            return False
        except RenderError as exc:
            logger.warning(
                "Worker %d: item %d (%s) failed: %s", self.worker_id, item.index, item.output_name, exc.reason
            )
            self._results.record(RenderFailure(item.index, item.output_name, exc.reason))
            return True

        self._results.record(RenderSuccess(item.index, item.output_name, pdf_bytes))
        self.rendered += 1
        return True
