from app.models import QuarantineReason
from app.policy import BLOCKED_EXTENSIONS, TypePolicy, get_extension

SIGNATURE_SAMPLE_BYTES = 16


def check_filename(filename: str) -> QuarantineReason | None:
    """Reject deny-listed extensions and names that hide one before the last dot.

    Only looks at the name, so it runs before any bytes are read.
    """
    if get_extension(filename) in BLOCKED_EXTENSIONS:
        return QuarantineReason.BLOCKED_EXTENSION

    parts = filename.split(".")
    if len(parts) <= 2:
        return None
    if any(part.lower() in BLOCKED_EXTENSIONS for part in parts[1:-1]):
        return QuarantineReason.DOUBLE_EXTENSION
    return None


def matches_signature(content: bytes, policy: TypePolicy) -> bool:
    # Plain-text formats register no signature and pass on extension alone.
    if not policy.signatures:
        return True
    return any(signature.matches(content) for signature in policy.signatures)


def signature_sample(content: bytes) -> str:
    return " ".join(f"{byte:02x}" for byte in content[:SIGNATURE_SAMPLE_BYTES])
