import asyncio
from functools import lru_cache
from urllib.parse import quote
import logging
import os

import aiohttp

logger = logging.getLogger("intake.storage")

RAW_BUCKET = os.getenv("RAW_BUCKET", "uploads-raw")
PROCESSED_BUCKET = os.getenv("PROCESSED_BUCKET", "uploads-processed")


class StorageError(Exception):
    pass


class SupabaseStorage:
    """Bucket-scoped uploads and signed URLs against the Supabase Storage REST API."""

    def __init__(self, base_url: str, service_key: str, timeout_seconds: float = 60.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._storage_url = f"{self._base_url}/storage/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
        }
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _object_path(self, bucket: str, path: str) -> str:
        return f"{quote(bucket.strip('/'))}/{quote(path.lstrip('/'))}"

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str | None) -> None:
        url = f"{self._storage_url}/object/{self._object_path(bucket, path)}"
        headers = {
            **self._headers,
            "Content-Type": content_type or "application/octet-stream",
            "x-upsert": "false",
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(url, headers=headers, data=data) as response:
                    if response.status >= 300:
                        body = await response.text()
                        logger.error(
                            "Storage upload failed | status=%s | bucket=%s | path=%s | body=%s",
                            response.status, bucket, path, body,
                        )
                        raise StorageError(f"Upload failed with status {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StorageError(f"Upload request failed: {exc}") from exc

    async def remove(self, bucket: str, paths: list[str]) -> None:
        url = f"{self._storage_url}/object/{quote(bucket.strip('/'))}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.delete(
                    url, headers=self._headers, json={"prefixes": paths}
                ) as response:
                    if response.status >= 300:
                        body = await response.text()
                        logger.error(
                            "Storage remove failed | status=%s | bucket=%s | paths=%s | body=%s",
                            response.status, bucket, paths, body,
                        )
                        raise StorageError(f"Remove failed with status {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StorageError(f"Remove request failed: {exc}") from exc

    async def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        url = f"{self._storage_url}/object/sign/{self._object_path(bucket, path)}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    url, headers=self._headers, json={"expiresIn": expires_in}
                ) as response:
                    if response.status != 200:
                        body = await response.text()
                        logger.error(
                            "Signed URL request failed | status=%s | bucket=%s | path=%s | body=%s",
                            response.status, bucket, path, body,
                        )
                        raise StorageError(f"Signing failed with status {response.status}")
                    payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StorageError(f"Signing request failed: {exc}") from exc

        signed = payload.get("signedURL") or payload.get("signedUrl")
        if not isinstance(signed, str) or not signed:
            raise StorageError("Signed URL missing from storage response")
        if signed.startswith("http"):
            return signed
        return f"{self._storage_url}/{signed.lstrip('/')}"


@lru_cache
def get_storage() -> SupabaseStorage:
    base_url = os.getenv("SUPABASE_URL", "http://localhost:54321")
    service_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    timeout = float(os.getenv("STORAGE_TIMEOUT_SECONDS", "60"))
    return SupabaseStorage(base_url, service_key, timeout)
