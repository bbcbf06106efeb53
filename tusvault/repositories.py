"""Narrow persistence interfaces for upload sessions and access references.

The protocol core only talks to these two classes, never to the ORM directly.
Both are thin wrappers around a SQLAlchemy ``Session``; each mutating call
commits on its own so a single save is the unit of atomicity.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from tusvault.models import AccessRef, Upload


class SessionRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def create(self, owner_id: str, size: int, file_name: str, mime_type: str) -> Upload:
        upload = Upload(
            owner_id=owner_id,
            size=size,
            current_offset=0,
            file_name=file_name,
            mime_type=mime_type,
        )
        self.db.add(upload)
        self.db.commit()
        self.db.refresh(upload)
        return upload

    def find(self, upload_id: str) -> Upload | None:
        return self.db.get(Upload, upload_id)

    def find_for_update(self, upload_id: str) -> Upload | None:
        # Callers hold the per-session lock; this bypasses the identity map so the
        # offset check sees what the last writer committed.
        return self.db.get(Upload, upload_id, populate_existing=True, with_for_update=True)

    def save(self, upload: Upload) -> Upload:
        try:
            self.db.add(upload)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return upload

    def delete(self, upload: Upload) -> None:
        self.db.delete(upload)
        self.db.commit()

    def list_for_owner(self, owner_id: str) -> list[Upload]:
        return list(
            self.db.scalars(
                select(Upload).where(Upload.owner_id == owner_id).order_by(Upload.created_at.desc())
            ).all()
        )

    def list_finalizable(self) -> list[Upload]:
        return list(
            self.db.scalars(
                select(Upload)
                .where(Upload.size != 0, Upload.size == Upload.current_offset)
                .order_by(Upload.updated_at.desc())
            ).all()
        )

    def list_ids(self) -> set[str]:
        return set(self.db.scalars(select(Upload.id)).all())


class AccessRefRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def create(self, upload: Upload, owner_id: str) -> AccessRef:
        access_ref = AccessRef(upload_id=upload.id, owner_id=owner_id)
        self.db.add(access_ref)
        self.db.commit()
        self.db.refresh(access_ref)
        return access_ref

    def find(self, access_ref_id: str) -> AccessRef | None:
        return self.db.get(AccessRef, access_ref_id)

    def find_with_upload(self, access_ref_id: str) -> AccessRef | None:
        return self.db.scalar(
            select(AccessRef).options(joinedload(AccessRef.upload)).where(AccessRef.id == access_ref_id)
        )

    def list_for_owner(self, owner_id: str) -> list[AccessRef]:
        return list(
            self.db.scalars(
                select(AccessRef).where(AccessRef.owner_id == owner_id).order_by(AccessRef.created_at.desc())
            ).all()
        )

    def delete(self, access_ref: AccessRef) -> None:
        self.db.delete(access_ref)
        self.db.commit()
