import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.auth import client_ip, get_current_user
from app.db import ACCESS_LOG_COLLECTION, UPLOADED_COLLECTION, get_db
from app.models import FileAccessLogEntry
from app.storage import PROCESSED_BUCKET, StorageError, get_storage

logger = logging.getLogger("intake.files")

router = APIRouter(tags=["Files"])

# Seconds each kind of link stays valid.
SIGNED_URL_TTLS = {
    "standard": 4 * 60 * 60,
    "preview": 60 * 60,
    "thumb": 30 * 60,
    "download": 5 * 60,
}
DEFAULT_SIGNED_URL_TTL = 60 * 60

SIGNED_URL_ADMIN_USERS = frozenset(
    user.strip()
    for user in os.getenv("SIGNED_URL_ADMIN_USERS", "").split(",")
    if user.strip()
)


class SignedUrlRequest(BaseModel):
    file_id: str | None = None
    type: str = "preview"


def resolve_variant_path(record: dict, kind: str) -> tuple[str | None, int]:
    """Pick the stored path for the requested kind, falling back to larger variants."""
    standard = record.get("standard_path")
    preview = record.get("preview_path")
    thumb = record.get("thumb_path")

    if kind == "preview":
        path = preview or standard
    elif kind == "thumb":
        path = thumb or preview or standard
    else:
        path = standard
    return path, SIGNED_URL_TTLS.get(kind, DEFAULT_SIGNED_URL_TTL)


def can_access(record: dict, user_id: str) -> bool:
    return record.get("user_id") == user_id or user_id in SIGNED_URL_ADMIN_USERS


@router.post("/signed-url", summary="Issue a time-limited URL for a stored file")
async def create_signed_url(
    body: SignedUrlRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
):
    if not body.file_id:
        raise HTTPException(status_code=400, detail="file_id is required")

    db = get_db()
    try:
        record = await db[UPLOADED_COLLECTION].find_one({"id": body.file_id}, {"_id": 0})
    except Exception:
        logger.exception("Failed to look up file %s", body.file_id)
        raise HTTPException(status_code=503, detail="Database unavailable")

    if not record:
        raise HTTPException(status_code=404, detail="File not found")

    if not can_access(record, user_id):
        logger.warning("Access denied: file=%s user=%s", body.file_id, user_id)
        raise HTTPException(status_code=403, detail="Access denied")

    path, expires_in = resolve_variant_path(record, body.type)
    if not path:
        raise HTTPException(status_code=404, detail="File path not available")

    try:
        url = await get_storage().create_signed_url(PROCESSED_BUCKET, path, expires_in)
    except StorageError:
        logger.exception("Signed URL error for file %s", body.file_id)
        raise HTTPException(status_code=500, detail="Failed to generate URL")

    entry = FileAccessLogEntry(
        file_id=body.file_id,
        user_id=user_id,
        action="download" if body.type == "download" else "view",
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") or "unknown",
    )
    try:
        await db[ACCESS_LOG_COLLECTION].insert_one(entry.model_dump())
    except Exception:
        logger.exception("Failed to write access log for file %s", body.file_id)

    return {
        "success": True,
        "url": url,
        "expires_in": expires_in,
        "file": {
            "id": record.get("id"),
            "original_filename": record.get("original_filename"),
            "file_type": record.get("file_type"),
            "mime_type": record.get("mime_type"),
            "file_size_bytes": record.get("file_size_bytes"),
        },
    }
