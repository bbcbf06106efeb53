import logging
import queue
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from threading import Condition

from tusvault.config import settings
from tusvault.events import finalize_event
from tusvault.finalizer import FinalizeOutcome, Finalizer, SessionNotFound, finalizer
from tusvault.metrics import finalize_failures_total, finalize_inflight, finalize_queue_depth


@dataclass(frozen=True)
class FinalizeFailure:
    upload_id: str
    error: str
    attempts: int


class FinalizeExecutor:
    """Runs finalize tasks off the request path.

    Tasks are retried on unexpected errors; the last failure lands on an error
    channel instead of propagating, since the triggering request has already
    been acknowledged.
    """

    def __init__(self, finalizer: Finalizer, workers: int, queue_maxsize: int, max_retries: int) -> None:
        self.finalizer = finalizer
        self.executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="finalize")
        self.workers = max(1, workers)
        self.queue_maxsize = queue_maxsize
        self.max_retries = max_retries
        self.errors: queue.Queue[FinalizeFailure] = queue.Queue()
        self._idle = Condition()
        self._queued = 0
        self._inflight = 0

    def snapshot(self) -> tuple[int, int, int]:
        with self._idle:
            return self._queued, self._inflight, self.workers

    def submit_finalize(self, upload_id: str) -> Future | None:
        with self._idle:
            if self._queued >= self.queue_maxsize:
                finalize_event(
                    {"event": "finalize_rejected", "upload_id": upload_id, "queued": self._queued},
                    logging.WARNING,
                )
                return None
            self._queued += 1
            finalize_queue_depth.set(self._queued)
        try:
            return self.executor.submit(self._run, upload_id)
        except RuntimeError as exc:
            # executor already shut down; the recovery sweep will finalize on next start
            with self._idle:
                self._queued -= 1
                finalize_queue_depth.set(self._queued)
                self._idle.notify_all()
            finalize_event({"event": "finalize_rejected", "upload_id": upload_id, "detail": str(exc)}, logging.WARNING)
            return None

    def _on_start(self) -> None:
        with self._idle:
            self._queued -= 1
            self._inflight += 1
            finalize_queue_depth.set(self._queued)
            finalize_inflight.set(self._inflight)

    def _on_end(self) -> None:
        with self._idle:
            self._inflight -= 1
            finalize_inflight.set(self._inflight)
            if self._queued == 0 and self._inflight == 0:
                self._idle.notify_all()

    def _run(self, upload_id: str) -> FinalizeOutcome | None:
        self._on_start()
        try:
            attempts = 0
            while True:
                attempts += 1
                try:
                    return self.finalizer.finalize(upload_id)
                except SessionNotFound:
                    finalize_event({"event": "finalize_skipped", "upload_id": upload_id, "detail": "upload deleted"})
                    return None
                except Exception as exc:
                    if attempts > self.max_retries:
                        finalize_failures_total.inc()
                        self.errors.put(FinalizeFailure(upload_id=upload_id, error=str(exc), attempts=attempts))
                        finalize_event(
                            {
                                "event": "finalize_failed",
                                "upload_id": upload_id,
                                "attempts": attempts,
                                "detail": str(exc),
                                "error_class": type(exc).__name__,
                            },
                            logging.ERROR,
                        )
                        return None
                    finalize_event(
                        {"event": "finalize_retry", "upload_id": upload_id, "attempt": attempts, "detail": str(exc)},
                        logging.WARNING,
                    )
                    time.sleep(0.05 * attempts)
        finally:
            self._on_end()

    def drain_errors(self) -> list[FinalizeFailure]:
        drained: list[FinalizeFailure] = []
        while True:
            try:
                drained.append(self.errors.get_nowait())
            except queue.Empty:
                return drained

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._queued == 0 and self._inflight == 0, timeout=timeout)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


finalize_executor = FinalizeExecutor(
    finalizer,
    workers=settings.finalize_worker_count,
    queue_maxsize=settings.finalize_queue_maxsize,
    max_retries=settings.finalize_max_retries,
)
