import logging
import os
import re

from fastapi import Request, Response

logger = logging.getLogger("intake.cors")

DEFAULT_ALLOWED_ORIGINS = (
    "https://lovable.dev",
    re.compile(r"^https://[a-z0-9-]+-preview--ffnpobdcqcagjmlddvga\.lovableproject\.com$"),
    re.compile(r"^https://[a-z0-9-]+\.lovableproject\.com$"),
)

CORS_FALLBACK_ORIGIN = os.getenv("CORS_FALLBACK_ORIGIN", "https://lovable.dev")
CORS_ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type"
CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_MAX_AGE = "86400"


def _parse_origins(raw: str) -> tuple[str | re.Pattern, ...]:
    """Entries are comma separated; a "re:" prefix marks a regular expression."""
    origins: list[str | re.Pattern] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if entry.startswith("re:"):
            origins.append(re.compile(entry[3:]))
        else:
            origins.append(entry)
    return tuple(origins)


_raw_origins = os.getenv("CORS_ALLOWED_ORIGINS", "").strip()
ALLOWED_ORIGINS = _parse_origins(_raw_origins) if _raw_origins else DEFAULT_ALLOWED_ORIGINS


def is_allowed_origin(origin: str | None) -> bool:
    if not origin:
        return False
    for allowed in ALLOWED_ORIGINS:
        if isinstance(allowed, str):
            if allowed == origin:
                return True
        elif allowed.fullmatch(origin):
            return True
    return False


def cors_headers(origin: str | None) -> dict[str, str]:
    # Unknown origins get the fallback, never an echo of what they sent.
    return {
        "Access-Control-Allow-Origin": origin if is_allowed_origin(origin) else CORS_FALLBACK_ORIGIN,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Max-Age": CORS_MAX_AGE,
        "Vary": "Origin",
    }


async def cors_middleware(request: Request, call_next):
    headers = cors_headers(request.headers.get("origin"))
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=headers)

    response = await call_next(request)
    response.headers.update(headers)
    return response
