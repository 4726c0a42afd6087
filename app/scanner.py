from dataclasses import dataclass
import logging
import os
import socket
import struct

from app.models import QuarantineReason

logger = logging.getLogger("intake.scanner")

SCAN_WINDOW_BYTES = 10_000
DEFAULT_TIMEOUT_SECONDS = 5.0

SCRIPT_MARKERS = ("<script", "javascript:")
PHP_MARKERS = ("<?php", "<?=")
POWERSHELL_MARKERS = ("powershell", "Invoke-Expression")
EXECUTABLE_MAGIC = b"MZ"


@dataclass
class ScanResult:
    status: str
    engine: str
    detail: str
    reason: QuarantineReason | None = None

    @property
    def clean(self) -> bool:
        return self.status != "malicious"


def _malicious(reason: QuarantineReason, detail: str) -> ScanResult:
    return ScanResult(status="malicious", engine="heuristic", detail=detail, reason=reason)


def _scan_heuristic(content: bytes) -> ScanResult:
    text = content[:SCAN_WINDOW_BYTES].decode("utf-8", errors="replace")

    if any(marker in text for marker in SCRIPT_MARKERS):
        return _malicious(QuarantineReason.EMBEDDED_SCRIPT, "Embedded script detected")
    if any(marker in text for marker in PHP_MARKERS):
        return _malicious(QuarantineReason.EMBEDDED_PHP, "Embedded PHP code detected")
    if content[:2] == EXECUTABLE_MAGIC:
        return _malicious(QuarantineReason.EXECUTABLE_CONTENT, "Executable content detected")
    if any(marker in text for marker in POWERSHELL_MARKERS):
        return _malicious(QuarantineReason.POWERSHELL_CONTENT, "PowerShell content detected")
    return ScanResult(status="clean", engine="heuristic", detail="No suspicious pattern matched")


def _scan_clamav(content: bytes) -> ScanResult:
    host = os.getenv("CLAMAV_HOST", "clamav")
    port = int(os.getenv("CLAMAV_PORT", "3310"))
    timeout = float(os.getenv("CLAMAV_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(b"zINSTREAM\0")
            # One chunk, then the zero-length terminator. Sizes are 4-byte big-endian.
            sock.sendall(struct.pack(">I", len(content)))
            sock.sendall(content)
            sock.sendall(struct.pack(">I", 0))
            response = sock.recv(4096).decode("utf-8", errors="replace").strip()
    except Exception as exc:
        logger.warning("ClamAV connection failed (host=%s port=%s): %s", host, port, exc)
        return ScanResult(status="error", engine="clamav", detail="ClamAV unavailable")

    if "FOUND" in response:
        signature = response.split("FOUND")[0].split(":")[-1].strip()
        return _clamav_hit(signature)
    if "OK" in response:
        return ScanResult(status="clean", engine="clamav", detail="No signature matched")
    return ScanResult(status="error", engine="clamav", detail=f"Unexpected response: {response}")


def _clamav_hit(signature: str) -> ScanResult:
    return ScanResult(
        status="malicious",
        engine="clamav",
        detail=f"Malware signature detected: {signature}",
        reason=QuarantineReason.MALWARE_SIGNATURE,
    )


def scan_content(filename: str, content: bytes) -> ScanResult:
    """
    Scan mode (SCANNER_MODE):
    - heuristic (default): pattern checks on the first 10 000 bytes
    - clamav: heuristics first, then ClamAV for files that passed; if ClamAV
      is unreachable the heuristic verdict stands
    """
    heuristic = _scan_heuristic(content)
    if not heuristic.clean:
        logger.warning("Heuristic scan flagged %s: %s", filename, heuristic.detail)
        return heuristic

    mode = os.getenv("SCANNER_MODE", "heuristic").strip().lower()
    if mode != "clamav":
        return heuristic

    clamav = _scan_clamav(content)
    if clamav.status == "error":
        heuristic.detail = f"{heuristic.detail} (ClamAV unavailable)"
        return heuristic
    return clamav
