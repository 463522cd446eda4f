from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from ..config import StorageConfig
from ..errors import StorageUploadError
from ..types import UploadedImageRef

logger = logging.getLogger(__name__)


class SupabaseStorageClient:
    """Uploads objects to a Supabase Storage bucket over its REST API."""

    def __init__(
        self,
        config: StorageConfig,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        base_url = config.url.rstrip("/")
        self._session = httpx.AsyncClient(
            base_url=f"{base_url}/storage/v1",
            headers={
                "apikey": config.service_role_key,
                "Authorization": f"Bearer {config.service_role_key}",
            },
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._public_base = f"{base_url}/storage/v1/object/public/{config.bucket}"

    @property
    def bucket(self) -> str:
        return self._config.bucket

    async def aclose(self) -> None:
        await self._session.aclose()

    def public_url(self, path: str) -> str:
        return f"{self._public_base}/{quote(path.lstrip('/'))}"

    async def upload(
        self,
        path: str,
        content: bytes,
        content_type: str = "image/png",
        upsert: bool = False,
    ) -> UploadedImageRef:
        """Store ``content`` at ``path``; an existing object is never overwritten unless ``upsert``."""
        object_path = quote(path.lstrip("/"))
        try:
            response = await self._session.post(
                f"/object/{self._config.bucket}/{object_path}",
                content=content,
                headers={
                    "Content-Type": content_type,
                    "x-upsert": "true" if upsert else "false",
                    "cache-control": "3600",
                },
            )
        except httpx.HTTPError as exc:
            raise StorageUploadError(f"Storage upload failed for {path}: {exc}") from exc

        if response.is_error:
            raise StorageUploadError(
                f"Storage upload failed for {path}: {response.status_code} {response.text[:500]}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        logger.debug("Uploaded %s (%d bytes) to bucket %s", path, len(content), self._config.bucket)
        return UploadedImageRef(path=path, public_url=self.public_url(path))

    async def __aenter__(self) -> "SupabaseStorageClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()
