from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from tusvault.events import finalize_event
from tusvault.finalizer import FinalizeOutcome, Finalizer
from tusvault.repositories import SessionRepository
from tusvault.staging import ChunkStore
from tusvault.storage import BlobStorage


def recover_finalizable(db: Session, finalizer: Finalizer) -> dict[str, int]:
    """Finalize every complete session left behind by a crash or a dropped task."""
    candidates = [upload.id for upload in SessionRepository(db).list_finalizable()]
    stats = {"scanned": len(candidates), "finalized": 0, "not_applicable": 0, "failed": 0}
    for upload_id in candidates:
        try:
            outcome = finalizer.finalize(upload_id)
        except Exception as exc:
            stats["failed"] += 1
            finalize_event(
                {
                    "event": "recovery_failed",
                    "upload_id": upload_id,
                    "detail": str(exc),
                    "error_class": type(exc).__name__,
                },
                logging.ERROR,
            )
            continue
        if outcome == FinalizeOutcome.finalized:
            stats["finalized"] += 1
        elif outcome == FinalizeOutcome.not_applicable:
            stats["not_applicable"] += 1

    finalize_event({"event": "recovery_sweep", **stats})
    return stats


def cleanup_once(db: Session, chunks: ChunkStore, blobs: BlobStorage) -> dict[str, int]:
    # list candidates before reading ids; buffers and blobs only appear after their row commits
    buffer_ids = chunks.list_ids()
    try:
        blob_keys = blobs.list_keys("uploads/")
    except Exception:
        # Storage listing may be unavailable in some environments.
        blob_keys = []
    known_ids = SessionRepository(db).list_ids()

    buffers_deleted = 0
    for upload_id in buffer_ids:
        if upload_id in known_ids:
            continue
        try:
            chunks.remove(upload_id)
            buffers_deleted += 1
        except OSError:
            # Best effort cleanup; keep going with the rest.
            pass

    blobs_deleted = 0
    for key in blob_keys:
        # keys under a live upload may be mid-finalize and not referenced yet
        owner_segment = key.split("/")[1] if key.count("/") >= 2 else ""
        if owner_segment in known_ids:
            continue
        try:
            blobs.delete_key(key)
            blobs_deleted += 1
        except Exception:
            pass

    return {"orphan_buffers_deleted": buffers_deleted, "orphan_blobs_deleted": blobs_deleted}
