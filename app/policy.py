"""
Static upload policy: accepted file types, their limits and signatures.

The tables are built once at import and exposed read-only. Each pipeline gets
its own PipelineConfig, which the ingestion layer receives as an argument
instead of reaching for module globals.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

MB = 1024 * 1024

BLOCKED_EXTENSIONS = frozenset({
    # Markup / script that browsers execute
    "svg", "html", "htm", "js", "mjs", "cjs",
    # Executables and shell scripts
    "exe", "bat", "cmd", "ps1", "sh", "bash",
    "jar", "vbs", "scr", "dll", "sys",
    # Disk images
    "iso", "img", "dmg",
    # Macro-enabled Office files
    "docm", "xlsm", "pptm",
    # Server-side code
    "php", "asp", "aspx", "jsp", "py", "rb", "pl",
})

OCTET_STREAM = "application/octet-stream"

PHOTO_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/heic", "image/heif"})


@dataclass(frozen=True)
class Signature:
    magic: bytes
    offset: int = 0

    def matches(self, content: bytes) -> bool:
        end = self.offset + len(self.magic)
        return content[self.offset:end] == self.magic


@dataclass(frozen=True)
class TypePolicy:
    extension: str
    max_size_bytes: int
    allowed_mime_types: frozenset[str]
    category: str
    signatures: tuple[Signature, ...] = ()
    # Binary formats whose structure makes the text heuristics misfire.
    scan_content: bool = True

    @property
    def max_size_mb(self) -> int:
        return round(self.max_size_bytes / MB)


@dataclass(frozen=True)
class PipelineConfig:
    name: str
    policies: Mapping[str, TypePolicy]
    url_ttl_seconds: int
    strict_mime: bool = False
    strict_mime_types: frozenset[str] = field(default_factory=frozenset)
    strict_mime_error: str = "File type not allowed"
    photo_variants: bool = False

    def policy_for(self, extension: str) -> TypePolicy | None:
        return self.policies.get(extension.lower())


PDF = (Signature(b"%PDF"),)
ZIP_LOCAL = (Signature(b"PK\x03\x04"),)
JPEG = (Signature(b"\xff\xd8\xff"),)
PNG = (Signature(b"\x89PNG\r\n\x1a\n"),)
TIFF = (Signature(b"II*\x00"), Signature(b"MM\x00*"))
ISO_BMFF = (Signature(b"ftyp", offset=4),)
MP3 = (
    Signature(b"\xff\xfb"),
    Signature(b"\xff\xfa"),
    Signature(b"\xff\xf3"),
    Signature(b"ID3"),
)
ZIP = (Signature(b"PK\x03\x04"), Signature(b"PK\x05\x06"), Signature(b"PK\x07\x08"))


def _table(*policies: TypePolicy) -> Mapping[str, TypePolicy]:
    table: dict[str, TypePolicy] = {}
    for policy in policies:
        if policy.extension in table:
            raise ValueError(f"Duplicate policy for extension: {policy.extension}")
        table[policy.extension] = policy
    return MappingProxyType(table)


def _policy(
    extension: str,
    max_mb: int,
    mime_types: set[str],
    category: str,
    signatures: tuple[Signature, ...] = (),
    scan_content: bool = True,
) -> TypePolicy:
    return TypePolicy(
        extension=extension,
        max_size_bytes=max_mb * MB,
        allowed_mime_types=frozenset(mime_types),
        category=category,
        signatures=signatures,
        scan_content=scan_content,
    )


DOCUMENT_POLICIES = _table(
    # Documents
    _policy("pdf", 25, {"application/pdf"}, "document", PDF),
    _policy(
        "docx", 25,
        {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"},
        "document", ZIP_LOCAL,
    ),
    _policy(
        "xlsx", 25,
        {"application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"},
        "document", ZIP_LOCAL,
    ),
    _policy(
        "pptx", 25,
        {"application/vnd.openxmlformats-officedocument.presentationml.presentation"},
        "document", ZIP_LOCAL,
    ),
    _policy("txt", 25, {"text/plain"}, "document"),
    _policy("rtf", 25, {"application/rtf", "text/rtf"}, "document", (Signature(b"{\\rtf"),)),
    # Data
    _policy("csv", 50, {"text/csv", "application/csv"}, "data"),
    _policy("json", 10, {"application/json", "text/json"}, "data"),
    _policy("xml", 10, {"application/xml", "text/xml"}, "data"),
    # Images
    _policy("jpg", 15, {"image/jpeg"}, "image", JPEG, scan_content=False),
    _policy("jpeg", 15, {"image/jpeg"}, "image", JPEG, scan_content=False),
    _policy("png", 15, {"image/png"}, "image", PNG, scan_content=False),
    _policy("tif", 15, {"image/tiff"}, "image", TIFF, scan_content=False),
    _policy("tiff", 15, {"image/tiff"}, "image", TIFF, scan_content=False),
    _policy("heic", 15, {"image/heic"}, "image", scan_content=False),
    _policy("heif", 15, {"image/heif"}, "image", scan_content=False),
    # Audio / video
    _policy("mp3", 50, {"audio/mpeg", "audio/mp3"}, "audio", MP3, scan_content=False),
    _policy("wav", 50, {"audio/wav", "audio/wave"}, "audio", (Signature(b"RIFF"),), scan_content=False),
    _policy("mp4", 250, {"video/mp4"}, "video", ISO_BMFF, scan_content=False),
    # Archives
    _policy(
        "zip", 100, {"application/zip", "application/x-zip-compressed"},
        "archive", ZIP, scan_content=False,
    ),
)

PHOTO_POLICIES = _table(
    _policy("jpg", 15, {"image/jpeg"}, "image", JPEG, scan_content=False),
    _policy("jpeg", 15, {"image/jpeg"}, "image", JPEG, scan_content=False),
    _policy("png", 15, {"image/png"}, "image", PNG, scan_content=False),
    _policy("heic", 15, {"image/heic"}, "image", ISO_BMFF, scan_content=False),
    _policy("heif", 15, {"image/heif"}, "image", ISO_BMFF, scan_content=False),
)

DOCUMENT_URL_TTL_SECONDS = 4 * 60 * 60
PHOTO_URL_TTL_SECONDS = 60 * 60

DOCUMENT_PIPELINE = PipelineConfig(
    name="documents",
    policies=DOCUMENT_POLICIES,
    url_ttl_seconds=DOCUMENT_URL_TTL_SECONDS,
)

PHOTO_PIPELINE = PipelineConfig(
    name="photos",
    policies=PHOTO_POLICIES,
    url_ttl_seconds=PHOTO_URL_TTL_SECONDS,
    strict_mime=True,
    strict_mime_types=PHOTO_MIME_TYPES,
    strict_mime_error="File type not allowed. Accepted: JPG, PNG, HEIC, HEIF",
    photo_variants=True,
)


def get_extension(filename: str) -> str:
    """Return the lowercased final extension, or an empty string."""
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()
