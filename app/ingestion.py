"""
Per-file ingestion pipeline.

Every file in a batch goes through the same ordered stages: name gate,
policy lookup, size and MIME pre-check, magic-byte verification, heuristic
scan, storage and metadata recording. A file ends in exactly one of three
outcomes: stored, soft failure, or quarantined. Files are handled one after
another and a failure never leaks into its siblings.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Awaitable, Callable
import asyncio
import logging
import uuid

from app.alerts import send_quarantine_alert
from app.db import ACCESS_LOG_COLLECTION, QUARANTINE_COLLECTION, UPLOADED_COLLECTION
from app.imaging import VARIANT_SETTINGS, ImageProcessingError, render_variants
from app.inspection import check_filename, matches_signature, signature_sample
from app.models import (
    BatchResult,
    FileAccessLogEntry,
    FileResult,
    QuarantineReason,
    QuarantineRecord,
    StoredFile,
)
from app.policy import MB, OCTET_STREAM, PipelineConfig, TypePolicy, get_extension
from app.scanner import ScanResult, scan_content
from app.storage import PROCESSED_BUCKET, RAW_BUCKET, StorageError

logger = logging.getLogger("intake.ingestion")

MAX_FILES_PER_REQUEST = 10
MAX_BATCH_BYTES = 300 * MB


class BatchRejected(ValueError):
    """The batch as a whole violates a request limit; nothing was processed."""


@dataclass
class IncomingFile:
    filename: str
    content_type: str | None
    size: int
    read: Callable[[], Awaitable[bytes]]


@dataclass(frozen=True)
class Uploader:
    user_id: str
    tenant_id: str | None = None
    client_ip: str = "unknown"
    user_agent: str = "unknown"


def validate_batch(files: list[IncomingFile]) -> None:
    if not files:
        raise BatchRejected("No files provided")
    if len(files) > MAX_FILES_PER_REQUEST:
        raise BatchRejected(f"Maximum {MAX_FILES_PER_REQUEST} files per request")
    if sum(item.size for item in files) > MAX_BATCH_BYTES:
        raise BatchRejected(f"Total file size exceeds {MAX_BATCH_BYTES // MB} MB limit")


def tenant_partition(user_id: str, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"{user_id}/{now.year}/{now.month:02d}"


def _failed(filename: str, error: str) -> FileResult:
    return FileResult(filename=filename, error=error)


class IngestionPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        db,
        storage,
        scanner: Callable[[str, bytes], ScanResult] = scan_content,
        alert: Callable[[QuarantineRecord], Awaitable[None]] = send_quarantine_alert,
    ) -> None:
        self.config = config
        self._db = db
        self._storage = storage
        self._scanner = scanner
        self._alert = alert

    async def process_batch(self, files: list[IncomingFile], uploader: Uploader) -> BatchResult:
        validate_batch(files)
        results: list[FileResult] = []
        for incoming in files:
            results.append(await self.process_file(incoming, uploader))
        batch = BatchResult.from_results(results)
        logger.info(
            "Batch done: pipeline=%s user=%s processed=%s failed=%s quarantined=%s",
            self.config.name, uploader.user_id, batch.processed, batch.failed, batch.quarantined,
        )
        return batch

    async def process_file(self, incoming: IncomingFile, uploader: Uploader) -> FileResult:
        try:
            return await self._process(incoming, uploader)
        except Exception:
            logger.exception("Error processing file %s", incoming.filename)
            return _failed(incoming.filename, "Unexpected error while processing file")

    async def _process(self, incoming: IncomingFile, uploader: Uploader) -> FileResult:
        name = incoming.filename
        extension = get_extension(name)
        logger.info(
            "Processing file: %s size=%s type=%s ext=%s pipeline=%s",
            name, incoming.size, incoming.content_type, extension, self.config.name,
        )

        reason = check_filename(name)
        if reason is QuarantineReason.BLOCKED_EXTENSION:
            return await self._quarantine(
                incoming, uploader, reason,
                detail=f"Blocked file extension: {extension}",
                error="File type not allowed",
            )
        if reason is QuarantineReason.DOUBLE_EXTENSION:
            return await self._quarantine(
                incoming, uploader, reason,
                detail="Double extension detected",
                error="Suspicious file name",
            )

        policy = self.config.policy_for(extension)
        if policy is None:
            return _failed(name, f"File type not supported: {extension}")

        if incoming.size > policy.max_size_bytes:
            return _failed(
                name, f"File size exceeds {policy.max_size_mb} MB limit for {extension} files"
            )

        mime = incoming.content_type or ""
        if self.config.strict_mime:
            if mime not in self.config.strict_mime_types:
                return _failed(name, self.config.strict_mime_error)
        elif mime not in policy.allowed_mime_types and mime != OCTET_STREAM:
            # Browser MIME detection is unreliable; the signature check decides.
            logger.warning(
                "MIME type mismatch for %s: expected %s, got %s",
                name, "/".join(sorted(policy.allowed_mime_types)), mime or "<none>",
            )

        content = await incoming.read()

        if not matches_signature(content, policy):
            return await self._quarantine(
                incoming, uploader, QuarantineReason.MAGIC_BYTES_MISMATCH,
                detail="Magic bytes mismatch - possible file type spoofing",
                error="File validation failed",
                magic_bytes=signature_sample(content),
            )

        if policy.scan_content:
            scan = await asyncio.to_thread(self._scanner, name, content)
            if not scan.clean:
                return await self._quarantine(
                    incoming, uploader, scan.reason or QuarantineReason.MALWARE_SIGNATURE,
                    detail=scan.detail,
                    error="File failed security scan",
                )

        return await self._store(incoming, uploader, policy, content)

    async def _quarantine(
        self,
        incoming: IncomingFile,
        uploader: Uploader,
        reason: QuarantineReason,
        detail: str,
        error: str,
        magic_bytes: str | None = None,
    ) -> FileResult:
        record = QuarantineRecord(
            original_filename=incoming.filename,
            user_id=uploader.user_id,
            tenant_id=uploader.tenant_id,
            pipeline=self.config.name,
            reason=reason,
            reason_detail=detail,
            file_size_bytes=incoming.size,
            mime_type=incoming.content_type,
            magic_bytes=magic_bytes,
            upload_ip=uploader.client_ip,
            user_agent=uploader.user_agent,
        )
        try:
            await self._db[QUARANTINE_COLLECTION].insert_one(record.model_dump())
        except Exception:
            logger.exception("Failed to store quarantine record for %s", incoming.filename)

        logger.warning(
            "File quarantined: file=%s reason=%s detail=%s user=%s ip=%s",
            incoming.filename, record.reason, detail, uploader.user_id, uploader.client_ip,
        )
        await self._alert(record)
        return FileResult(filename=incoming.filename, error=error, quarantined=True)

    async def _store(
        self,
        incoming: IncomingFile,
        uploader: Uploader,
        policy: TypePolicy,
        content: bytes,
    ) -> FileResult:
        name = incoming.filename
        file_id = str(uuid.uuid4())
        partition = tenant_partition(uploader.user_id)

        try:
            if self.config.photo_variants:
                placement = await self._write_photo(file_id, partition, policy, incoming, content)
            else:
                placement = await self._write_document(file_id, partition, policy, incoming, content)
        except ImageProcessingError as exc:
            logger.warning("Image processing failed for %s: %s", name, exc)
            return _failed(name, "Failed to process image")
        except StorageError:
            logger.exception("Upload error for %s", name)
            return _failed(name, "Failed to upload file")

        record = StoredFile(
            id=file_id,
            tenant_id=uploader.tenant_id,
            user_id=uploader.user_id,
            original_filename=name,
            file_type=policy.category,
            mime_type=incoming.content_type,
            file_size_bytes=len(content),
            processing_status="completed",
            upload_ip=uploader.client_ip,
            user_agent=uploader.user_agent,
            **placement,
        )
        try:
            await self._db[UPLOADED_COLLECTION].insert_one(record.model_dump())
        except Exception:
            logger.exception("Database insert error for %s", name)
            return _failed(name, "Failed to save file record")

        entry = FileAccessLogEntry(
            file_id=file_id,
            user_id=uploader.user_id,
            action="upload",
            ip_address=uploader.client_ip,
            user_agent=uploader.user_agent,
        )
        try:
            await self._db[ACCESS_LOG_COLLECTION].insert_one(entry.model_dump())
        except Exception:
            # The stored file stands; only its audit trail is incomplete.
            logger.exception("Failed to write access log for file %s", file_id)

        urls = await self._signed_urls(record)
        logger.info("Successfully processed: %s -> %s", name, file_id)
        return FileResult(success=True, filename=name, file_id=file_id, **urls)

    async def _write_document(
        self,
        file_id: str,
        partition: str,
        policy: TypePolicy,
        incoming: IncomingFile,
        content: bytes,
    ) -> dict:
        stored_filename = f"{file_id}.{policy.extension}"
        path = f"{partition}/{stored_filename}"
        await self._storage.upload(PROCESSED_BUCKET, path, content, incoming.content_type)
        return {"stored_filename": stored_filename, "standard_path": path}

    async def _write_photo(
        self,
        file_id: str,
        partition: str,
        policy: TypePolicy,
        incoming: IncomingFile,
        content: bytes,
    ) -> dict:
        variants = await asyncio.to_thread(render_variants, content, policy.extension)

        raw_path = f"{partition}/{file_id}_raw.{policy.extension}"
        placement = {"raw_path": raw_path}
        written: list[tuple[str, str]] = []
        try:
            await self._storage.upload(RAW_BUCKET, raw_path, content, incoming.content_type)
            written.append((RAW_BUCKET, raw_path))
            for variant, rendered in variants.items():
                path = f"{partition}/{file_id}_{variant}.{rendered.extension}"
                await self._storage.upload(
                    PROCESSED_BUCKET, path, rendered.data, rendered.content_type
                )
                written.append((PROCESSED_BUCKET, path))
                placement[f"{variant}_path"] = path
        except StorageError:
            await self._discard(written)
            raise

        placement["stored_filename"] = f"{file_id}.{variants['standard'].extension}"
        placement["metadata_stripped"] = all(item.metadata_stripped for item in variants.values())
        return placement

    async def _discard(self, written: list[tuple[str, str]]) -> None:
        """Remove objects of a photo whose upload did not complete."""
        by_bucket: dict[str, list[str]] = {}
        for bucket, path in written:
            by_bucket.setdefault(bucket, []).append(path)
        for bucket, paths in by_bucket.items():
            try:
                await self._storage.remove(bucket, paths)
            except StorageError:
                logger.warning("Orphaned objects left in %s: %s", bucket, paths, exc_info=True)

    async def _signed_urls(self, record: StoredFile) -> dict:
        if not self.config.photo_variants:
            return {"url": await self._sign(record.standard_path)}

        urls = {}
        for variant in VARIANT_SETTINGS:
            urls[f"{variant}_url"] = await self._sign(getattr(record, f"{variant}_path"))
        return urls

    async def _sign(self, path: str | None) -> str | None:
        if not path:
            return None
        try:
            return await self._storage.create_signed_url(
                PROCESSED_BUCKET, path, self.config.url_ttl_seconds
            )
        except StorageError:
            logger.warning("Signed URL could not be issued for %s", path, exc_info=True)
            return None
