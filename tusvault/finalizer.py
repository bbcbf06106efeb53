"""Moves a completed staging buffer into blob storage.

Finalize is idempotent: the buffer is only removed after the session row that
points at the new blob has been committed, so a crash between the two steps
leaves a complete session with a buffer, which the recovery sweep picks up.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable

from sqlalchemy.orm import Session

from tusvault.db import SessionLocal
from tusvault.events import finalize_event
from tusvault.locks import KeyedLocks, session_locks
from tusvault.metrics import blob_attach_latency_seconds, finalize_total
from tusvault.repositories import SessionRepository
from tusvault.staging import ChunkStore, chunk_store
from tusvault.storage import BlobStorage, storage
from tusvault.tracing import get_tracer

tracer = get_tracer(__name__)


class FinalizeOutcome(str, enum.Enum):
    finalized = "FINALIZED"
    not_finished = "NOT_FINISHED"
    not_applicable = "NOT_APPLICABLE"


class SessionNotFound(LookupError):
    pass


class Finalizer:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        chunks: ChunkStore,
        blobs: BlobStorage,
        locks: KeyedLocks,
    ) -> None:
        self.session_factory = session_factory
        self.chunks = chunks
        self.blobs = blobs
        self.locks = locks

    def finalize(self, upload_id: str) -> FinalizeOutcome:
        with tracer.start_as_current_span("tusvault.finalize") as span:
            span.set_attribute("tusvault.upload_id", upload_id)
            with self.locks.hold(upload_id), self.session_factory() as db:
                outcome = self._finalize_locked(SessionRepository(db), upload_id)
            span.set_attribute("tusvault.finalize_outcome", outcome.value)
        finalize_total.labels(outcome=outcome.value).inc()
        return outcome

    def _finalize_locked(self, sessions: SessionRepository, upload_id: str) -> FinalizeOutcome:
        upload = sessions.find_for_update(upload_id)
        if upload is None:
            raise SessionNotFound(upload_id)
        if not upload.is_complete:
            return FinalizeOutcome.not_finished

        buffer_stat = self.chunks.stat(upload.id)
        if buffer_stat is None:
            finalize_event({"event": "finalize_not_applicable", "upload_id": upload.id})
            return FinalizeOutcome.not_applicable
        if buffer_stat.st_size != upload.size:
            raise RuntimeError(
                f"staging buffer holds {buffer_stat.st_size} bytes, expected {upload.size}"
            )

        previous_key = upload.file_key
        started = time.perf_counter()
        key = self.blobs.attach_file(upload.id, upload.file_name, self.chunks.path(upload.id), mime_type=upload.mime_type)
        blob_attach_latency_seconds.observe(time.perf_counter() - started)

        upload.file_key = key
        sessions.save(upload)
        self.chunks.remove(upload.id)

        if previous_key and previous_key != key:
            try:
                self.blobs.delete_key(previous_key)
            except Exception as exc:
                finalize_event(
                    {"event": "stale_blob_delete_failed", "upload_id": upload.id, "key": previous_key, "detail": str(exc)},
                    logging.WARNING,
                )

        finalize_event({"event": "finalize_completed", "upload_id": upload.id, "key": key, "size": upload.size})
        return FinalizeOutcome.finalized


finalizer = Finalizer(SessionLocal, chunk_store, storage, session_locks)
