"""
alerts.py – Larm när en fil sätts i karantän.

Stöder två kanaler (kan kombineras):
  - Slack/Teams/valfri webhook via ALERT_WEBHOOK_URL
  - E-post via SMTP (ALERT_SMTP_* miljövariabler)

Varje karantänhändelse skickas. Allvarlighetsgrad:
  - critical: innehållsfynd (magic bytes, skadligt mönster, ClamAV-signatur)
  - high:     namnfynd (blockerad eller dubbel filändelse)

Larmet är enbart en notifiering – inga användare blockeras automatiskt.

Miljövariabler:
  ALERT_WEBHOOK_URL          – URL att POST:a JSON-payload till (Slack/Teams/custom)
  ALERT_SMTP_HOST            – SMTP-server (t.ex. smtp.gmail.com)
  ALERT_SMTP_PORT            – SMTP-port (default 587)
  ALERT_SMTP_USER            – SMTP-användarnamn
  ALERT_SMTP_PASSWORD        – SMTP-lösenord
  ALERT_SMTP_FROM            – Avsändaradress
  ALERT_SMTP_TO              – Mottagaradress (kommaseparerat för flera)
  ALERT_ENV_NAME             – Miljönamn som visas i larmet (default "production")
"""

import asyncio
import json
import logging
import os
import smtplib
from email.mime.text import MIMEText
from urllib import request as urllib_request

from app.models import QuarantineReason, QuarantineRecord

logger = logging.getLogger("intake.alerts")

ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "").strip()
ALERT_ENV_NAME = os.getenv("ALERT_ENV_NAME", "production")

_SMTP_HOST = os.getenv("ALERT_SMTP_HOST", "").strip()
_SMTP_PORT = int(os.getenv("ALERT_SMTP_PORT", "587"))
_SMTP_USER = os.getenv("ALERT_SMTP_USER", "").strip()
_SMTP_PASSWORD = os.getenv("ALERT_SMTP_PASSWORD", "").strip()
_SMTP_FROM = os.getenv("ALERT_SMTP_FROM", "").strip()
_SMTP_TO_RAW = os.getenv("ALERT_SMTP_TO", "").strip()
_SMTP_TO = [addr.strip() for addr in _SMTP_TO_RAW.split(",") if addr.strip()]

_NAME_REASONS = {
    QuarantineReason.BLOCKED_EXTENSION.value,
    QuarantineReason.DOUBLE_EXTENSION.value,
}


def _severity(reason: str) -> str:
    return "high" if reason in _NAME_REASONS else "critical"


def _build_payload(record: QuarantineRecord) -> dict:
    """Bygg en strukturerad payload för webhook och e-post."""
    return {
        "env": ALERT_ENV_NAME,
        "event": "upload_quarantined",
        "severity": _severity(record.reason),
        "filename": record.original_filename,
        "pipeline": record.pipeline,
        "reason": record.reason,
        "reason_detail": record.reason_detail,
        "file_size_bytes": record.file_size_bytes,
        "mime_type": record.mime_type,
        "magic_bytes": record.magic_bytes,
        "user_id": record.user_id,
        "tenant_id": record.tenant_id,
        "client_ip": record.upload_ip,
    }


def _send_webhook(payload: dict) -> None:
    """Synkron webhook-avsändning (körs i en tråd via asyncio.to_thread)."""
    if not ALERT_WEBHOOK_URL:
        return
    try:
        body = json.dumps(payload).encode("utf-8")
        req = urllib_request.Request(
            ALERT_WEBHOOK_URL,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib_request.urlopen(req, timeout=5) as resp:
            logger.info("Alert webhook delivered, status=%s", resp.status)
    except Exception as exc:
        logger.error("Alert webhook failed: %s", exc)


def _send_email(payload: dict) -> None:
    """Synkron e-postavsändning (körs i en tråd via asyncio.to_thread)."""
    if not (_SMTP_HOST and _SMTP_FROM and _SMTP_TO):
        return
    try:
        subject = (
            f"[Intake/{ALERT_ENV_NAME}] "
            f"{payload['severity'].upper()} – {payload['filename']} "
            f"i karantän ({payload['reason']})"
        )
        body_lines = [
            f"Miljö:        {payload['env']}",
            f"Fil:          {payload['filename']}",
            f"Pipeline:     {payload['pipeline']}",
            f"Orsak:        {payload['reason']}",
            f"Detalj:       {payload['reason_detail']}",
            f"Storlek:      {payload['file_size_bytes']} bytes",
            f"MIME-typ:     {payload['mime_type'] or '-'}",
            f"Magic bytes:  {payload['magic_bytes'] or '-'}",
            f"Användare:    {payload['user_id']}",
            f"Tenant:       {payload['tenant_id'] or '-'}",
            f"Klient-IP:    {payload['client_ip']}",
        ]
        msg = MIMEText("\n".join(body_lines), "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = _SMTP_FROM
        msg["To"] = ", ".join(_SMTP_TO)

        with smtplib.SMTP(_SMTP_HOST, _SMTP_PORT, timeout=10) as server:
            server.ehlo()
            server.starttls()
            if _SMTP_USER and _SMTP_PASSWORD:
                server.login(_SMTP_USER, _SMTP_PASSWORD)
            server.sendmail(_SMTP_FROM, _SMTP_TO, msg.as_string())
        logger.info("Alert e-post skickad till %s", _SMTP_TO)
    except Exception as exc:
        logger.error("Alert e-post misslyckades: %s", exc)


async def send_quarantine_alert(record: QuarantineRecord) -> None:
    """
    Asynkron ingångspunkt som anropas från pipelinen vid varje karantän.
    Fel i larmkanalerna ska aldrig påverka svaret för filen.
    """
    payload = _build_payload(record)

    logger.warning(
        "ALERT triggered: file=%s reason=%s pipeline=%s user=%s ip=%s",
        record.original_filename, record.reason, record.pipeline,
        record.user_id, record.upload_ip,
    )

    # Kör webhook och e-post parallellt i bakgrundstrådar
    tasks = []
    if ALERT_WEBHOOK_URL:
        tasks.append(asyncio.to_thread(_send_webhook, payload))
    if _SMTP_HOST and _SMTP_FROM and _SMTP_TO:
        tasks.append(asyncio.to_thread(_send_email, payload))

    if tasks:
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Alert delivery error: %s", result)
