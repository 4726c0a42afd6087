from datetime import UTC, datetime, timedelta
import logging
import os

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.auth import client_ip, get_current_user
from app.cors import cors_middleware
from app.db import QUARANTINE_COLLECTION, UPLOADED_COLLECTION, ensure_indexes, get_db
from app.ingestion import BatchRejected, IncomingFile, IngestionPipeline, Uploader
from app.logging_config import setup_logging
from app.policy import DOCUMENT_PIPELINE, PHOTO_PIPELINE, PipelineConfig
from app.routers import files
from app.storage import get_storage

logger = logging.getLogger("intake")

app = FastAPI(title="Intake Upload API")

app.middleware("http")(cors_middleware)

app.include_router(files.router)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


DEFAULT_UPLOAD_LIST_LIMIT = _env_int("UPLOAD_LIST_LIMIT_DEFAULT", 25)
MAX_UPLOAD_LIST_LIMIT = _env_int("UPLOAD_LIST_LIMIT_MAX", 100)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.on_event("startup")
async def startup():
    setup_logging()
    try:
        await ensure_indexes()
    except Exception:
        logger.exception("Failed to ensure MongoDB indexes on startup")


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    # Measure the spooled file without reading it into memory.
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


def _incoming(upload: UploadFile) -> IncomingFile:
    return IncomingFile(
        filename=upload.filename or "",
        content_type=upload.content_type,
        size=_upload_size(upload),
        read=upload.read,
    )


async def _run_pipeline(
    config: PipelineConfig,
    request: Request,
    uploads: list[UploadFile] | None,
    tenant_id: str | None,
    user_id: str,
):
    uploader = Uploader(
        user_id=user_id,
        tenant_id=tenant_id or None,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent") or "unknown",
    )
    try:
        incoming = [_incoming(upload) for upload in uploads or []]
        pipeline = IngestionPipeline(config, get_db(), get_storage())
        batch = await pipeline.process_batch(incoming, uploader)
    except BatchRejected as exc:
        logger.warning("Batch rejected: pipeline=%s user=%s reason=%s", config.name, user_id, exc)
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except Exception:
        logger.exception("Upload error in %s pipeline", config.name)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return batch.to_response()


@app.post("/upload-document")
async def upload_document(
    request: Request,
    files: list[UploadFile] | None = File(None),
    tenant_id: str | None = Form(None),
    user_id: str = Depends(get_current_user),
):
    return await _run_pipeline(DOCUMENT_PIPELINE, request, files, tenant_id, user_id)


@app.post("/upload-photo")
async def upload_photo(
    request: Request,
    files: list[UploadFile] | None = File(None),
    tenant_id: str | None = Form(None),
    user_id: str = Depends(get_current_user),
):
    return await _run_pipeline(PHOTO_PIPELINE, request, files, tenant_id, user_id)


SUMMARY_WINDOWS = {
    "last_24h": timedelta(hours=24),
    "last_7d": timedelta(days=7),
    "all_time": None,
}
TOP_REASONS_WINDOW = timedelta(days=7)


def _since(now: datetime, window: timedelta | None) -> dict:
    return {"created_at": {"$gte": now - window}} if window else {}


def _window_summary(stored: int, quarantined: int) -> dict:
    total = stored + quarantined
    return {
        "total_files": total,
        "stored": stored,
        "quarantined": quarantined,
        "quarantine_rate_percent": round((quarantined / total) * 100, 1) if total else 0.0,
    }


def _top_reasons(records: list[dict], count: int = 3) -> list[dict]:
    reasons: dict[str, int] = {}
    for item in records:
        reason = item.get("reason") or "unknown"
        reasons[reason] = reasons.get(reason, 0) + 1
    return sorted(
        [{"reason": k, "count": v} for k, v in reasons.items()],
        key=lambda row: row["count"],
        reverse=True,
    )[:count]


@app.get("/uploads")
async def list_uploads(
    limit: int = DEFAULT_UPLOAD_LIST_LIMIT,
    user_id: str = Depends(get_current_user),
):
    try:
        safe_limit = max(1, min(limit, MAX_UPLOAD_LIST_LIMIT))
        db = get_db()
        cursor = (
            db[UPLOADED_COLLECTION]
            .find({"user_id": user_id}, {"_id": 0})
            .sort("created_at", -1)
            .limit(safe_limit)
        )
        items = [item async for item in cursor]
        return {"items": items}
    except Exception:
        logger.exception("Failed to list uploads from database")
        raise HTTPException(status_code=503, detail="Database unavailable")


@app.get("/metrics/summary")
async def metrics_summary(_user_id: str = Depends(get_current_user)):
    try:
        db = get_db()
        now = datetime.now(UTC)
        summary = {}
        for name, window in SUMMARY_WINDOWS.items():
            query = _since(now, window)
            stored = await db[UPLOADED_COLLECTION].count_documents(query)
            quarantined = await db[QUARANTINE_COLLECTION].count_documents(query)
            summary[name] = _window_summary(stored, quarantined)

        cursor = db[QUARANTINE_COLLECTION].find(
            _since(now, TOP_REASONS_WINDOW), {"_id": 0, "reason": 1}
        )
        summary["top_quarantine_reasons_7d"] = _top_reasons([item async for item in cursor])
        return summary
    except Exception:
        logger.exception("Failed to build metrics summary")
        raise HTTPException(status_code=503, detail="Database unavailable")
