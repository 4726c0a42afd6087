from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class QuarantineReason(str, Enum):
    BLOCKED_EXTENSION = "blocked_extension"
    DOUBLE_EXTENSION = "double_extension"
    MAGIC_BYTES_MISMATCH = "magic_bytes_mismatch"
    EMBEDDED_SCRIPT = "embedded_script"
    EMBEDDED_PHP = "embedded_php"
    EXECUTABLE_CONTENT = "executable_content"
    POWERSHELL_CONTENT = "powershell_content"
    MALWARE_SIGNATURE = "malware_signature"


class QuarantineRecord(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    original_filename: str
    user_id: str
    tenant_id: str | None = None
    pipeline: str
    reason: QuarantineReason
    reason_detail: str
    file_size_bytes: int = Field(ge=0)
    mime_type: str | None = None
    magic_bytes: str | None = None
    upload_ip: str = Field(default="unknown")
    user_agent: str = Field(default="unknown")


class StoredFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    tenant_id: str | None = None
    user_id: str
    original_filename: str
    stored_filename: str
    file_type: str
    mime_type: str | None = None
    file_size_bytes: int = Field(ge=0)
    raw_path: str | None = None
    standard_path: str
    preview_path: str | None = None
    thumb_path: str | None = None
    processing_status: str = Field(default="completed")
    metadata_stripped: bool = Field(default=False)
    upload_ip: str = Field(default="unknown")
    user_agent: str = Field(default="unknown")


class FileAccessLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    file_id: str
    user_id: str
    action: str = Field(default="upload")
    ip_address: str = Field(default="unknown")
    user_agent: str = Field(default="unknown")


class FileResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    filename: str | None = None
    file_id: str | None = Field(default=None, alias="fileId")
    url: str | None = None
    standard_url: str | None = Field(default=None, alias="standardUrl")
    preview_url: str | None = Field(default=None, alias="previewUrl")
    thumb_url: str | None = Field(default=None, alias="thumbUrl")
    error: str | None = None
    quarantined: bool | None = None


class BatchResult(BaseModel):
    success: bool
    processed: int
    failed: int
    quarantined: int
    results: list[FileResult]

    @classmethod
    def from_results(cls, results: list[FileResult]) -> "BatchResult":
        processed = sum(1 for item in results if item.success)
        quarantined = sum(1 for item in results if item.quarantined)
        return cls(
            success=processed > 0,
            processed=processed,
            failed=len(results) - processed - quarantined,
            quarantined=quarantined,
            results=results,
        )

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
