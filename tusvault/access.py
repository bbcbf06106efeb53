"""Serving finalized files through access references.

An access reference is the shareable unit: whoever holds its id can read the
file, without touching the upload's own owner-only rules.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import BinaryIO
from urllib.parse import quote

from fastapi import HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from starlette.datastructures import Headers

from tusvault.models import Upload
from tusvault.repositories import AccessRefRepository
from tusvault.storage import BlobNotFound, BlobStorage
from tusvault.tus import NotFound


@dataclass(frozen=True)
class ResolvedBlob:
    access_ref_id: str
    upload: Upload
    key: str
    size: int

    @property
    def last_modified(self) -> datetime:
        updated = self.upload.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return updated.astimezone(timezone.utc).replace(microsecond=0)

    @property
    def etag(self) -> str:
        return f'"{self.upload.id}-{self.size:x}-{int(self.last_modified.timestamp()):x}"'


def resolve_access_ref(refs: AccessRefRepository, blobs: BlobStorage, access_ref_id: str) -> ResolvedBlob:
    access_ref = refs.find_with_upload(access_ref_id)
    if access_ref is None or access_ref.upload is None:
        raise NotFound("access reference not found")
    upload = access_ref.upload
    if not upload.file_key:
        raise NotFound("file is not available yet")
    try:
        size = blobs.size(upload.file_key)
    except BlobNotFound as exc:
        raise NotFound("file not found") from exc
    return ResolvedBlob(access_ref_id=access_ref.id, upload=upload, key=upload.file_key, size=size)


def _content_disposition(file_name: str) -> str:
    ascii_name = file_name.encode("ascii", "ignore").decode("ascii").replace('"', "") or "file"
    return f"inline; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(file_name)}"


def _etag_matches(header: str, etag: str) -> bool:
    if header.strip() == "*":
        return True
    candidates = [item.strip().removeprefix("W/") for item in header.split(",")]
    return etag in candidates


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_not_modified(headers: Headers, resolved: ResolvedBlob) -> bool:
    if_none_match = headers.get("if-none-match")
    if if_none_match is not None:
        return _etag_matches(if_none_match, resolved.etag)
    if_modified_since = _parse_http_date(headers.get("if-modified-since"))
    return if_modified_since is not None and resolved.last_modified <= if_modified_since


def _range_applies(headers: Headers, resolved: ResolvedBlob) -> bool:
    if_range = headers.get("if-range")
    if if_range is None:
        return True
    if if_range.strip().startswith(('"', "W/")):
        return if_range.strip() == resolved.etag
    since = _parse_http_date(if_range)
    return since is not None and resolved.last_modified <= since


def parse_range(range_header: str, file_size: int) -> tuple[int, int] | None:
    """Return an inclusive ``(start, end)`` or ``None`` when the whole file should be sent."""
    if not range_header.startswith("bytes="):
        raise HTTPException(status_code=416, detail="invalid range header", headers={"Content-Range": f"bytes */{file_size}"})
    ranges = range_header.removeprefix("bytes=").strip()
    if "," in ranges:
        return None
    parts = ranges.split("-", 1)
    if len(parts) != 2 or not any(parts) or not all(part.isdigit() for part in parts if part):
        raise HTTPException(status_code=416, detail="invalid range format", headers={"Content-Range": f"bytes */{file_size}"})

    if not parts[0]:
        suffix = int(parts[1])
        if suffix == 0:
            raise HTTPException(status_code=416, detail="range out of bounds", headers={"Content-Range": f"bytes */{file_size}"})
        return max(0, file_size - suffix), file_size - 1

    start = int(parts[0])
    end = int(parts[1]) if parts[1].isdigit() else file_size - 1
    if start >= file_size or end < start:
        raise HTTPException(status_code=416, detail="range out of bounds", headers={"Content-Range": f"bytes */{file_size}"})
    return start, min(end, file_size - 1)


def _iter_blob(handle: BinaryIO, length: int, block_size: int) -> Iterator[bytes]:
    try:
        remaining = length
        while remaining > 0:
            block = handle.read(min(block_size, remaining))
            if not block:
                break
            remaining -= len(block)
            yield block
    finally:
        handle.close()


def serve_blob(request: Request, resolved: ResolvedBlob, blobs: BlobStorage, block_size: int) -> Response:
    upload = resolved.upload
    headers = {
        "Last-Modified": format_datetime(resolved.last_modified, usegmt=True),
        "ETag": resolved.etag,
        "Accept-Ranges": "bytes",
        "Content-Disposition": _content_disposition(upload.file_name),
    }
    if is_not_modified(request.headers, resolved):
        return Response(status_code=304, headers=headers)

    start, end, status_code = 0, resolved.size - 1, 200
    range_header = request.headers.get("range")
    if range_header and _range_applies(request.headers, resolved):
        byte_range = parse_range(range_header, resolved.size)
        if byte_range is not None:
            start, end = byte_range
            status_code = 206
            headers["Content-Range"] = f"bytes {start}-{end}/{resolved.size}"

    length = end - start + 1
    headers["Content-Length"] = str(length)
    try:
        handle = blobs.open_for_read(resolved.key, start=start, length=length)
    except BlobNotFound as exc:
        raise NotFound("file not found") from exc
    return StreamingResponse(
        _iter_blob(handle, length, block_size),
        status_code=status_code,
        media_type=upload.mime_type,
        headers=headers,
    )
