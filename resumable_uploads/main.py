import re
import time
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartException
from starlette.requests import ClientDisconnect

from resumable_uploads.config import settings
from resumable_uploads.db import SessionLocal, get_db, init_db
from resumable_uploads.limits import upload_locks
from resumable_uploads.maintenance import cleanup_once
from resumable_uploads.metrics import (
    bytes_received_total,
    chunk_write_failures_total,
    chunks_accepted_total,
    chunks_rejected_total,
    db_update_latency_seconds,
    http_request_duration_seconds,
    metrics_response,
    status_queries_total,
    store_write_latency_seconds,
    uploads_deleted_total,
)
from resumable_uploads.models import UploadRecord, derive_status, utc_now
from resumable_uploads.schemas import ContentRange, ErrorResponse, UploadResponse, UploadState
from resumable_uploads.storage import storage
from resumable_uploads.tracing import chunk_span, current_trace_id, setup_tracing
from resumable_uploads.tracker import tracker

CONTENT_RANGE_PATTERN = re.compile(r"(?:bytes )?(\d+)-(\d+)/(\d+)", re.ASCII)
DECLARED_SIZE_PATTERN = re.compile(r"\d+", re.ASCII)
MAX_UPLOAD_ID_LENGTH = 255


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    def _cleanup() -> dict[str, int]:
        with SessionLocal() as db:
            return cleanup_once(db)

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(_cleanup)
                if stats["stale_uploads_deleted"]:
                    _audit_event({"event": "audit", "action": "cleanup", "trigger": "periodic", **stats})
            except Exception as exc:
                _log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)
request_logger = logging.getLogger("rus.request")
if not request_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    request_logger.addHandler(handler)
request_logger.setLevel(logging.INFO)
audit_logger = logging.getLogger("rus.audit")
if not audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
audit_logger.setLevel(logging.INFO)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.headers.get("x-file-id") or None


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _log_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    request_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":")))


def _audit_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    audit_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":")))


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or malformed request headers"},
    500: {"model": ErrorResponse, "description": "Storage or stream failure"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-RUS-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    _log_event(
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


def _error_response(request: Request, status_code: int, detail: str, headers: dict | None = None) -> JSONResponse:
    body = ErrorResponse(
        status=status_code,
        detail=detail,
        error_code=_error_code_for_status(status_code),
        request_id=_request_id(request),
        upload_id=_upload_id(request),
        trace_id=current_trace_id(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers or {})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return _error_response(request, exc.status_code, str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_event(
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
    return _error_response(request, 500, "internal server error")


def _require_upload_id(upload_id: str | None) -> str:
    if not upload_id:
        raise HTTPException(status_code=400, detail="Found no proper id header")
    if (
        len(upload_id) > MAX_UPLOAD_ID_LENGTH
        or upload_id in (".", "..")
        or any(sep in upload_id for sep in ("/", "\\", "\x00"))
    ):
        raise HTTPException(status_code=400, detail="x-file-id is not usable as an upload id")
    return upload_id


def _require_declared_size(raw: str | None) -> int:
    if raw is None or not DECLARED_SIZE_PATTERN.fullmatch(raw.strip()):
        raise HTTPException(status_code=400, detail="Found no proper size header")
    return int(raw)


def _parse_content_range(raw: str | None) -> ContentRange:
    if raw is None:
        raise HTTPException(status_code=400, detail='Invalid header "content-range"')
    match = CONTENT_RANGE_PATTERN.fullmatch(raw.strip())
    if match is None:
        raise HTTPException(status_code=400, detail='Invalid header "content-range"')
    start, end, total = (int(group) for group in match.groups())
    if not start <= end <= total:
        raise HTTPException(status_code=400, detail="content-range must satisfy start <= end <= total")
    return ContentRange(start=start, end=end, total=total)


def _state(confirmed_offset: int, declared_total_size: int) -> UploadState:
    return UploadState(
        status=derive_status(confirmed_offset, declared_total_size),
        uploaded_size=confirmed_offset,
    )


def _record_upload(db: Session, upload_id: str, declared_total_size: int, confirmed_offset: int) -> None:
    db_t0 = time.perf_counter()
    record = db.get(UploadRecord, upload_id)
    if record is None:
        record = UploadRecord(id=upload_id)
        db.add(record)
    record.declared_total_size = declared_total_size
    record.confirmed_offset = confirmed_offset
    record.status = derive_status(confirmed_offset, declared_total_size).value
    record.updated_at = utc_now()
    db.commit()
    db_update_latency_seconds.observe(time.perf_counter() - db_t0)


def _confirmed_offset(upload_id: str) -> int:
    try:
        return tracker.confirmed_offset(upload_id)
    except OSError as exc:
        raise HTTPException(status_code=500, detail=f"failed to probe upload storage: {exc}") from exc


async def _drain(request: Request) -> None:
    try:
        async for _ in request.stream():
            pass
    except ClientDisconnect:
        # nothing left to discard
        return


async def _write_chunk(request: Request, upload_id: str, chunk_range: ContentRange) -> int:
    try:
        form = await request.form()
    except ClientDisconnect as exc:
        chunk_write_failures_total.inc()
        raise HTTPException(status_code=500, detail="chunk stream ended before completion") from exc
    except MultiPartException as exc:
        raise HTTPException(status_code=400, detail=f"malformed multipart payload: {exc.message}") from exc

    try:
        part = next((value for value in form.values() if isinstance(value, UploadFile)), None)
        if part is None:
            raise HTTPException(status_code=400, detail="multipart payload carries no file part")

        t0 = time.perf_counter()
        try:
            written = await asyncio.to_thread(storage.write_at, upload_id, chunk_range.start, part.file)
        except OSError as exc:
            chunk_write_failures_total.inc()
            raise HTTPException(status_code=500, detail=f"chunk write failed: {exc}") from exc
        store_write_latency_seconds.observe(time.perf_counter() - t0)

        if written != chunk_range.length:
            await asyncio.to_thread(storage.truncate, upload_id, chunk_range.start)
            chunk_write_failures_total.inc()
            raise HTTPException(
                status_code=400,
                detail=f"payload carried {written} bytes but content-range spans {chunk_range.length}",
            )
        return written
    finally:
        await form.close()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_root": settings.storage_root,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/admin/cleanup", responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(request: Request, db: Session = Depends(get_db)) -> dict:
    stats = cleanup_once(db)
    _audit_event(
        {
            "event": "audit",
            "action": "cleanup",
            "trigger": "admin",
            "request_id": _request_id(request),
            **stats,
        }
    )
    return {"status": "ok", **stats}


@app.get("/upload", response_model=UploadResponse, responses={**COMMON_ERROR_RESPONSES})
def upload_status(
    x_file_id: str | None = Header(default=None, alias="x-file-id"),
    x_file_size: str | None = Header(default=None, alias="x-file-size"),
    db: Session = Depends(get_db),
) -> UploadResponse:
    declared_size = _require_declared_size(x_file_size)
    upload_id = _require_upload_id(x_file_id)
    confirmed = _confirmed_offset(upload_id)
    status_queries_total.inc()
    _record_upload(db, upload_id, declared_size, confirmed)
    return UploadResponse(data=_state(confirmed, declared_size))


@app.post("/upload", response_model=UploadResponse, responses={**COMMON_ERROR_RESPONSES})
async def upload_chunk(
    request: Request,
    content_range: str | None = Header(default=None, alias="content-range"),
    x_file_id: str | None = Header(default=None, alias="x-file-id"),
    db: Session = Depends(get_db),
) -> UploadResponse:
    chunk_range = _parse_content_range(content_range)
    upload_id = _require_upload_id(x_file_id)

    async with upload_locks.hold(upload_id):
        with chunk_span(upload_id, chunk_range.start, chunk_range.end, chunk_range.total) as span:
            expected = _confirmed_offset(upload_id)
            if chunk_range.start != expected or expected >= chunk_range.total:
                await _drain(request)
                chunks_rejected_total.inc()
                span.set_attribute("upload.accepted", False)
                _audit_event(
                    {
                        "event": "audit",
                        "action": "chunk_rejected",
                        "request_id": _request_id(request),
                        "upload_id": upload_id,
                        "start": chunk_range.start,
                        "expected_offset": expected,
                        "total": chunk_range.total,
                    }
                )
                _record_upload(db, upload_id, chunk_range.total, expected)
                return UploadResponse(data=_state(expected, chunk_range.total))

            written = await _write_chunk(request, upload_id, chunk_range)
            tracker.advance(upload_id, chunk_range.end)
            span.set_attribute("upload.accepted", True)

        chunks_accepted_total.inc()
        bytes_received_total.inc(written)
        # chunk is already applied; the record is bookkeeping only
        try:
            _record_upload(db, upload_id, chunk_range.total, chunk_range.end)
        except SQLAlchemyError as exc:
            db.rollback()
            _log_event(
                {
                    "event": "record_update_failed",
                    "request_id": _request_id(request),
                    "upload_id": upload_id,
                    "confirmed_offset": chunk_range.end,
                    "error_class": "database_error",
                    "detail": str(exc),
                }
            )

    _audit_event(
        {
            "event": "audit",
            "action": "chunk_accepted",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "start": chunk_range.start,
            "end": chunk_range.end,
            "total": chunk_range.total,
        }
    )
    return UploadResponse(data=_state(chunk_range.end, chunk_range.total))


@app.delete(
    "/upload",
    response_model=UploadResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
async def delete_upload(
    request: Request,
    x_file_id: str | None = Header(default=None, alias="x-file-id"),
    db: Session = Depends(get_db),
) -> UploadResponse:
    upload_id = _require_upload_id(x_file_id)

    async with upload_locks.hold(upload_id):
        try:
            removed_file = await asyncio.to_thread(storage.delete, upload_id)
        except OSError as exc:
            raise HTTPException(status_code=500, detail=f"failed to delete upload storage: {exc}") from exc
        tracker.forget(upload_id)
        record = db.get(UploadRecord, upload_id)
        if record is not None:
            db.delete(record)
            db.commit()

    if not removed_file and record is None:
        raise HTTPException(status_code=404, detail="upload not found")
    uploads_deleted_total.inc()
    _audit_event(
        {
            "event": "audit",
            "action": "upload_deleted",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "file_removed": removed_file,
        }
    )
    return UploadResponse(data=None)
