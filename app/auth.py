"""
auth.py – Identifiering av anroparen för Intake Upload API.

Stöder fyra lägen via miljövariabeln AUTH_MODE:
  supabase – Supabase-sessionstoken i Authorization: Bearer-headern (default)
  firebase – Firebase ID-token i Authorization: Bearer-headern
  apikey   – Enkel API-nyckel i X-API-Key-headern
  off      – Ingen autentisering (lokal utveckling och tester)

API-nycklar lagras som kommaseparerad lista i INTAKE_API_KEYS.
Varje nyckel kan ha ett prefix för att identifiera ägare: "user1:abc123,user2:xyz456"
Om inget prefix anges används "anonymous" som user_id.
"""

import asyncio
import json
import logging
import os

import aiohttp
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("intake.auth")

AUTH_MODE = os.getenv("AUTH_MODE", "supabase").lower()

SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321").rstrip("/")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
AUTH_TIMEOUT_SECONDS = float(os.getenv("AUTH_TIMEOUT_SECONDS", "10"))

# Bygg upp en dict med nyckel -> user_id från INTAKE_API_KEYS
# Format: "userid1:key1,userid2:key2" eller bara "key1,key2"
_raw_keys = os.getenv("INTAKE_API_KEYS", "")
_API_KEY_MAP: dict[str, str] = {}

for entry in _raw_keys.split(","):
    entry = entry.strip()
    if not entry:
        continue
    if ":" in entry:
        uid, key = entry.split(":", 1)
        _API_KEY_MAP[key.strip()] = uid.strip()
    else:
        _API_KEY_MAP[entry] = "anonymous"

_bearer_scheme = HTTPBearer(auto_error=False)


def _resolve_apikey_user(request: Request) -> str | None:
    """Försök att lösa ut user_id från X-API-Key-headern."""
    key = request.headers.get("X-API-Key", "").strip()
    if not key:
        return None
    return _API_KEY_MAP.get(key)


async def _resolve_supabase_user(token: str) -> str | None:
    """Frågar Supabase Auth vem token tillhör (GET /auth/v1/user)."""
    headers = {
        "apikey": SUPABASE_ANON_KEY,
        "Authorization": f"Bearer {token}",
    }
    timeout = aiohttp.ClientTimeout(total=AUTH_TIMEOUT_SECONDS)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(f"{SUPABASE_URL}/auth/v1/user", headers=headers) as response:
                if response.status != 200:
                    logger.warning("Supabase token rejected, status=%s", response.status)
                    return None
                payload = await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.warning("Supabase auth lookup failed: %s", exc)
        return None

    user_id = payload.get("id") if isinstance(payload, dict) else None
    return user_id or None


async def _resolve_firebase_user(token: str) -> str | None:
    """Löser ut user_id från ett Firebase ID-token (Bearer)."""
    try:
        import firebase_admin
        from firebase_admin import auth as fb_auth
        from firebase_admin import credentials as fb_creds

        # Initialisera Firebase-appen om den inte redan är initialiserad.
        try:
            firebase_admin.get_app()
        except ValueError:
            creds_file = os.getenv("FIREBASE_CREDENTIALS_FILE")
            creds_json = os.getenv("FIREBASE_CREDENTIALS_JSON")
            if creds_file:
                firebase_admin.initialize_app(fb_creds.Certificate(creds_file))
            elif creds_json:
                firebase_admin.initialize_app(fb_creds.Certificate(json.loads(creds_json)))
            else:
                firebase_admin.initialize_app()

        decoded = fb_auth.verify_id_token(token)
        return decoded.get("uid") or decoded.get("email") or "firebase-user"
    except Exception as exc:
        logger.warning("Firebase token verification failed: %s", exc)
        return None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """
    FastAPI-dependency som returnerar user_id för den autentiserade användaren.

    Om AUTH_MODE=off returneras alltid "anonymous".
    Saknad eller ogiltig identitet ger HTTP 401.
    """
    if AUTH_MODE == "off":
        return "anonymous"

    client = request.client.host if request.client else "unknown"

    if AUTH_MODE == "apikey":
        user_id = _resolve_apikey_user(request)
        if user_id is None:
            logger.warning("Unauthorized upload attempt from %s – ogiltig eller saknad API-nyckel", client)
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user_id

    if AUTH_MODE in ("supabase", "firebase"):
        if not request.headers.get("Authorization"):
            raise HTTPException(status_code=401, detail="No authorization header")
        if credentials is None or not credentials.credentials:
            raise HTTPException(status_code=401, detail="Unauthorized")

        if AUTH_MODE == "supabase":
            user_id = await _resolve_supabase_user(credentials.credentials)
        else:
            user_id = await _resolve_firebase_user(credentials.credentials)

        if user_id is None:
            logger.warning("Unauthorized upload attempt from %s – ogiltig token", client)
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user_id

    # Okänt läge – fail-closed
    raise HTTPException(status_code=500, detail=f"Okänt AUTH_MODE: {AUTH_MODE}")


def client_ip(request: Request) -> str:
    """Första adressen i x-forwarded-for, annars x-real-ip, annars socket-peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"
