import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from tusvault.access import resolve_access_ref, serve_blob
from tusvault.auth import Principal, require_admin, require_user
from tusvault.config import settings
from tusvault.db import SessionLocal, get_db
from tusvault.events import audit_event, log_event
from tusvault.finalizer import finalizer
from tusvault.locks import session_locks
from tusvault.maintenance import cleanup_once, recover_finalizable
from tusvault.metrics import (
    append_conflicts_total,
    bytes_appended_total,
    chunks_appended_total,
    http_request_duration_seconds,
    metrics_response,
    uploads_created_total,
)
from tusvault.models import AccessRef, Upload
from tusvault.repositories import AccessRefRepository, SessionRepository
from tusvault.schemas import AccessRefCreateRequest, AccessRefView, ErrorResponse, RecoveryResponse, UploadView
from tusvault.staging import chunk_store
from tusvault.storage import storage
from tusvault.tracing import current_trace_id, setup_tracing
from tusvault.tus import (
    TUS_VERSION,
    Conflict,
    ProtocolError,
    UploadProtocol,
    check_append_headers,
    require_version,
    session_state,
)
from tusvault.worker import finalize_executor


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    def _sweep() -> dict[str, int]:
        with SessionLocal() as db:
            return recover_finalizable(db, finalizer)

    def _cleanup() -> dict[str, int]:
        with SessionLocal() as db:
            return cleanup_once(db, chunk_store, storage)

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(_cleanup)
            except Exception as exc:
                log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.recovery_sweep_enabled:
        try:
            await asyncio.to_thread(_sweep)
        except Exception as exc:
            log_event({"event": "recovery_error", "detail": str(exc), "error_class": "maintenance_error"})
    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task
    await asyncio.to_thread(finalize_executor.wait_idle, 30)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)

COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing credentials"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    429: {"model": ErrorResponse, "description": "Throttled request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
PROTOCOL_ERROR_RESPONSES = {
    **COMMON_ERROR_RESPONSES,
    412: {"model": ErrorResponse, "description": "Unsupported Tus-Resumable version"},
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _is_protocol_path(request: Request) -> bool:
    path = request.url.path
    return path == "/uploads" or path.startswith("/uploads/")


def _public_base(request: Request) -> str:
    return (settings.public_base_url or str(request.base_url)).rstrip("/")


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "missing_credentials",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        412: "version_mismatch",
        415: "unsupported_media_type",
        416: "range_not_satisfiable",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_headers(request: Request, extra: dict[str, str] | None = None) -> dict[str, str]:
    headers = dict(extra or {})
    if _is_protocol_path(request):
        headers["Tus-Resumable"] = TUS_VERSION
    return headers


def _protocol(db: Session) -> UploadProtocol:
    return UploadProtocol(
        SessionRepository(db),
        chunk_store,
        session_locks,
        max_upload_size=settings.max_upload_size_bytes,
        schedule_finalize=finalize_executor.submit_finalize,
    )


def _upload_view(upload: Upload) -> UploadView:
    return UploadView(
        id=upload.id,
        owner_id=upload.owner_id,
        size=upload.size,
        current_offset=upload.current_offset,
        file_name=upload.file_name,
        mime_type=upload.mime_type,
        state=session_state(upload, chunk_store.exists(upload.id)).value,
        created_at=upload.created_at,
        updated_at=upload.updated_at,
    )


def _access_ref_view(request: Request, access_ref: AccessRef) -> AccessRefView:
    return AccessRefView(
        id=access_ref.id,
        upload_id=access_ref.upload_id,
        owner_id=access_ref.owner_id,
        created_at=access_ref.created_at,
        url=f"{_public_base(request)}/accref/{access_ref.id}",
    )


def _get_owned_upload(db: Session, upload_id: str, principal: Principal) -> Upload:
    upload = SessionRepository(db).find(upload_id)
    if not upload:
        raise HTTPException(status_code=404, detail="upload not found")
    if upload.owner_id != principal.user_id:
        raise HTTPException(status_code=403, detail="forbidden for this upload owner")
    return upload


def _get_owned_access_ref(db: Session, access_ref_id: str, principal: Principal) -> AccessRef:
    access_ref = AccessRefRepository(db).find(access_ref_id)
    if not access_ref or access_ref.owner_id != principal.user_id:
        raise HTTPException(status_code=404, detail="access reference not found")
    return access_ref


def require_tus_resumable(tus_resumable: str | None = Header(default=None, alias="Tus-Resumable")) -> None:
    require_version(tus_resumable)


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Tusvault-Version"] = settings.app_version
    if _is_protocol_path(request):
        response.headers["Tus-Resumable"] = TUS_VERSION
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_code = exc.error_code if isinstance(exc, ProtocolError) else _error_code_for_status(exc.status_code)
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "error_code": error_code,
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc.detail),
            "error_code": error_code,
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": current_trace_id(),
        },
        headers=_error_headers(request, exc.headers),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "internal server error",
            "error_code": "internal_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": current_trace_id(),
        },
        headers=_error_headers(request),
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "tus_version": TUS_VERSION,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.options("/uploads", status_code=204)
def discover_protocol() -> Response:
    return Response(
        status_code=204,
        headers={
            "Tus-Version": TUS_VERSION,
            "Tus-Extension": "creation",
            "Tus-Max-Size": str(settings.max_upload_size_bytes),
        },
    )


@app.post(
    "/uploads",
    status_code=201,
    responses={**PROTOCOL_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Malformed request"}},
)
def create_upload(
    request: Request,
    _: None = Depends(require_tus_resumable),
    upload_length: str | None = Header(default=None, alias="Upload-Length"),
    upload_metadata: str | None = Header(default=None, alias="Upload-Metadata"),
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    upload = _protocol(db).create(principal.user_id, upload_length, upload_metadata)
    uploads_created_total.inc()
    audit_event(
        {
            "action": "upload_create",
            "request_id": _request_id(request),
            "upload_id": upload.id,
            "user_id": principal.user_id,
            "size": upload.size,
            "mime_type": upload.mime_type,
        }
    )
    return Response(status_code=201, headers={"Location": f"{_public_base(request)}/uploads/{upload.id}"})


@app.head(
    "/uploads/{upload_id}",
    responses={**PROTOCOL_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def upload_status(
    upload_id: str,
    _: None = Depends(require_tus_resumable),
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    upload = _protocol(db).status(upload_id)
    return Response(
        status_code=200,
        headers={
            "Upload-Offset": str(upload.current_offset),
            "Upload-Length": str(upload.size),
            "Cache-Control": "no-store",
        },
    )


@app.patch(
    "/uploads/{upload_id}",
    responses={
        **PROTOCOL_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Malformed request"},
        404: {"model": ErrorResponse, "description": "Upload not found"},
        409: {"model": ErrorResponse, "description": "Offset conflict"},
        415: {"model": ErrorResponse, "description": "Unsupported media type"},
    },
)
async def append_chunk(
    upload_id: str,
    request: Request,
    _: None = Depends(require_tus_resumable),
    content_type: str | None = Header(default=None, alias="Content-Type"),
    content_length: str | None = Header(default=None, alias="Content-Length"),
    upload_offset: str | None = Header(default=None, alias="Upload-Offset"),
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    length, offset = check_append_headers(content_type, content_length, upload_offset)
    protocol = _protocol(db)
    try:
        await asyncio.to_thread(protocol.precheck_append, upload_id, offset, length)
        body = await request.body()
        result = await asyncio.to_thread(protocol.append, upload_id, offset, length, body)
    except Conflict:
        append_conflicts_total.inc()
        raise

    chunks_appended_total.inc()
    bytes_appended_total.inc(result.written)
    audit_event(
        {
            "action": "upload_append",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "user_id": principal.user_id,
            "offset": result.offset,
            "size": result.size,
            "completed": result.completed,
        }
    )
    return Response(
        status_code=200,
        headers={"Upload-Offset": str(result.offset), "Upload-Length": str(result.size)},
    )


@app.get(
    "/accref/{access_ref_id}",
    responses={
        404: {"model": ErrorResponse, "description": "Access reference or file not found"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
def resolve_access(request: Request, access_ref_id: str, db: Session = Depends(get_db)) -> Response:
    resolved = resolve_access_ref(AccessRefRepository(db), storage, access_ref_id)
    audit_event(
        {
            "action": "accref_resolve",
            "request_id": _request_id(request),
            "access_ref_id": access_ref_id,
            "upload_id": resolved.upload.id,
            "range_requested": "range" in request.headers,
        }
    )
    return serve_blob(request, resolved, storage, settings.stream_block_size)


@app.get("/v1/uploads", response_model=list[UploadView], responses={**COMMON_ERROR_RESPONSES})
def list_uploads(principal: Principal = Depends(require_user), db: Session = Depends(get_db)) -> list[UploadView]:
    return [_upload_view(upload) for upload in SessionRepository(db).list_for_owner(principal.user_id)]


@app.get(
    "/v1/uploads/{upload_id}",
    response_model=UploadView,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def get_upload(
    upload_id: str,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> UploadView:
    return _upload_view(_get_owned_upload(db, upload_id, principal))


@app.post(
    "/v1/accrefs",
    response_model=AccessRefView,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def create_access_ref(
    request: Request,
    payload: AccessRefCreateRequest,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> AccessRefView:
    upload = _get_owned_upload(db, payload.upload_id, principal)
    access_ref = AccessRefRepository(db).create(upload, owner_id=principal.user_id)
    audit_event(
        {
            "action": "accref_create",
            "request_id": _request_id(request),
            "access_ref_id": access_ref.id,
            "upload_id": upload.id,
            "user_id": principal.user_id,
        }
    )
    return _access_ref_view(request, access_ref)


@app.get("/v1/accrefs", response_model=list[AccessRefView], responses={**COMMON_ERROR_RESPONSES})
def list_access_refs(
    request: Request,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> list[AccessRefView]:
    return [_access_ref_view(request, item) for item in AccessRefRepository(db).list_for_owner(principal.user_id)]


@app.get(
    "/v1/accrefs/{access_ref_id}",
    response_model=AccessRefView,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Access reference not found"}},
)
def get_access_ref(
    request: Request,
    access_ref_id: str,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> AccessRefView:
    return _access_ref_view(request, _get_owned_access_ref(db, access_ref_id, principal))


@app.delete(
    "/v1/accrefs/{access_ref_id}",
    status_code=204,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Access reference not found"}},
)
def delete_access_ref(
    request: Request,
    access_ref_id: str,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    access_ref = _get_owned_access_ref(db, access_ref_id, principal)
    AccessRefRepository(db).delete(access_ref)
    audit_event(
        {
            "action": "accref_delete",
            "request_id": _request_id(request),
            "access_ref_id": access_ref_id,
            "user_id": principal.user_id,
        }
    )
    return Response(status_code=204)


@app.post("/v1/admin/recover", response_model=RecoveryResponse, responses={**COMMON_ERROR_RESPONSES})
def run_recovery(
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> RecoveryResponse:
    stats = recover_finalizable(db, finalizer)
    audit_event({"action": "admin_recover", "request_id": _request_id(request), "user_id": principal.user_id, **stats})
    return RecoveryResponse(status="ok", requested_by=principal.user_id, **stats)


@app.post("/v1/admin/cleanup", responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(principal: Principal = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    stats = cleanup_once(db, chunk_store, storage)
    return {"status": "ok", "requested_by": principal.user_id, **stats}


@app.delete(
    "/v1/admin/uploads/{upload_id}",
    status_code=204,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def delete_upload(
    request: Request,
    upload_id: str,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Response:
    sessions = SessionRepository(db)
    with session_locks.hold(upload_id):
        upload = sessions.find_for_update(upload_id)
        if upload is None:
            raise HTTPException(status_code=404, detail="upload not found")
        file_key = upload.file_key
        sessions.delete(upload)
        chunk_store.remove(upload_id)
    if file_key:
        try:
            storage.delete_key(file_key)
        except Exception as exc:
            # orphaned blobs are collected by the cleanup pass
            log_event({"event": "blob_delete_error", "upload_id": upload_id, "detail": str(exc)})
    audit_event(
        {
            "action": "upload_delete",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "user_id": principal.user_id,
        }
    )
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
