"""TUS 1.0.0 core protocol: creation, offset query and chunk append.

Header parsing and precondition checks live here so the FastAPI routes stay a
thin translation layer. Every failure is an ``HTTPException`` subclass carrying
its own status and ``error_code``, rendered by the app's exception handler.
"""

from __future__ import annotations

import base64
import binascii
import enum
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError

from tusvault.locks import KeyedLocks
from tusvault.models import Upload
from tusvault.repositories import SessionRepository
from tusvault.staging import ChunkStore

TUS_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"
REQUIRED_METADATA_KEYS = ("filename", "filetype")


class ProtocolError(HTTPException):
    http_status = 500
    error_code = "internal_error"
    default_detail = "internal error"

    def __init__(self, detail: str | None = None, headers: dict[str, str] | None = None) -> None:
        super().__init__(status_code=self.http_status, detail=detail or self.default_detail, headers=headers)


class MalformedRequest(ProtocolError):
    http_status = 400
    error_code = "bad_request"
    default_detail = "malformed request"


class NotFound(ProtocolError):
    http_status = 404
    error_code = "not_found"
    default_detail = "not found"


class Conflict(ProtocolError):
    http_status = 409
    error_code = "conflict"
    default_detail = "offset conflict"


class VersionMismatch(ProtocolError):
    http_status = 412
    error_code = "version_mismatch"
    default_detail = "unsupported Tus-Resumable version"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail, headers={"Tus-Version": TUS_VERSION})


class UnsupportedMediaType(ProtocolError):
    http_status = 415
    error_code = "unsupported_media_type"
    default_detail = f"Content-Type must be {OFFSET_CONTENT_TYPE}"


class InternalError(ProtocolError):
    pass


class SessionState(str, enum.Enum):
    created = "CREATED"
    receiving = "RECEIVING"
    ready_to_finalize = "READY_TO_FINALIZE"
    finalized = "FINALIZED"


def session_state(upload: Upload, buffer_exists: bool) -> SessionState:
    if upload.file_key and not buffer_exists:
        return SessionState.finalized
    if upload.is_complete:
        return SessionState.ready_to_finalize
    if upload.current_offset == 0:
        return SessionState.created
    return SessionState.receiving


def require_version(value: str | None) -> None:
    if value != TUS_VERSION:
        raise VersionMismatch()


def parse_non_negative_int(value: str | None, header: str) -> int:
    if value is None or not (value.strip().isascii() and value.strip().isdigit()):
        raise MalformedRequest(f"{header} must be a non-negative integer")
    return int(value.strip())


def parse_metadata(header: str | None) -> dict[str, str]:
    """Decode ``key base64(value)`` pairs; malformed items are skipped, not fatal."""
    metadata: dict[str, str] = {}
    if not header:
        return metadata
    for item in header.split(","):
        tokens = item.strip().split(" ")
        if len(tokens) != 2:
            continue
        key, encoded = tokens
        try:
            metadata[key] = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            continue
    return metadata


def check_append_headers(content_type: str | None, content_length: str | None, upload_offset: str | None) -> tuple[int, int]:
    if content_type != OFFSET_CONTENT_TYPE:
        raise UnsupportedMediaType()
    length = parse_non_negative_int(content_length, "Content-Length")
    offset = parse_non_negative_int(upload_offset, "Upload-Offset")
    return length, offset


@dataclass(frozen=True)
class AppendResult:
    upload_id: str
    offset: int
    size: int
    written: int

    @property
    def completed(self) -> bool:
        return self.size != 0 and self.offset == self.size


class UploadProtocol:
    def __init__(
        self,
        sessions: SessionRepository,
        chunks: ChunkStore,
        locks: KeyedLocks,
        max_upload_size: int,
        schedule_finalize: Callable[[str], object] | None = None,
    ) -> None:
        self.sessions = sessions
        self.chunks = chunks
        self.locks = locks
        self.max_upload_size = max_upload_size
        self.schedule_finalize = schedule_finalize

    def create(self, owner_id: str, upload_length: str | None, upload_metadata: str | None) -> Upload:
        size = parse_non_negative_int(upload_length, "Upload-Length")
        if size > self.max_upload_size:
            raise MalformedRequest(f"Upload-Length exceeds the maximum of {self.max_upload_size} bytes")
        metadata = parse_metadata(upload_metadata)
        for key in REQUIRED_METADATA_KEYS:
            if not metadata.get(key):
                raise MalformedRequest(f"Upload-Metadata must include {key}")
        try:
            return self.sessions.create(
                owner_id=owner_id,
                size=size,
                file_name=metadata["filename"],
                mime_type=metadata["filetype"],
            )
        except SQLAlchemyError as exc:
            raise InternalError("failed to create upload record") from exc

    def status(self, upload_id: str) -> Upload:
        upload = self.sessions.find(upload_id)
        if upload is None:
            raise NotFound("upload not found")
        return upload

    @staticmethod
    def _check_offset(upload: Upload, upload_offset: int, content_length: int) -> None:
        if upload_offset == upload.current_offset and upload_offset >= upload.size:
            raise Conflict("upload is already complete")
        if upload_offset != upload.current_offset:
            raise Conflict(f"Upload-Offset {upload_offset} does not match current offset {upload.current_offset}")
        if upload_offset + content_length > upload.size:
            raise Conflict("chunk exceeds the declared Upload-Length")

    def precheck_append(self, upload_id: str, upload_offset: int, content_length: int) -> Upload:
        """Reject unknown sessions and stale offsets before the body is read."""
        upload = self.status(upload_id)
        self._check_offset(upload, upload_offset, content_length)
        return upload

    def append(self, upload_id: str, upload_offset: int, content_length: int, body: bytes) -> AppendResult:
        with self.locks.hold(upload_id):
            upload = self.sessions.find_for_update(upload_id)
            if upload is None:
                raise NotFound("upload not found")
            self._check_offset(upload, upload_offset, content_length)

            try:
                written = self.chunks.write_at(upload.id, upload_offset, body)
            except OSError as exc:
                raise InternalError(f"failed to write chunk: {exc}") from exc
            if written != content_length:
                raise InternalError("written bytes do not match Content-Length")

            upload.current_offset = upload_offset + written
            try:
                self.sessions.save(upload)
            except SQLAlchemyError as exc:
                raise InternalError("failed to persist upload offset") from exc
            result = AppendResult(upload_id=upload.id, offset=upload.current_offset, size=upload.size, written=written)

        if result.completed and self.schedule_finalize is not None:
            self.schedule_finalize(result.upload_id)
        return result
