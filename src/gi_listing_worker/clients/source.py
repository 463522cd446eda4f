from __future__ import annotations

import logging

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import SourceImageError
from ..images import detect_mime_type
from ..types import SourceImage

logger = logging.getLogger(__name__)


class SourceImageFetcher:
    """Downloads the vendor-supplied product image."""

    def __init__(
        self,
        timeout_seconds: float = 120.0,
        max_attempts: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_attempts = max_attempts
        self._session = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._session.aclose()

    async def fetch(self, url: str) -> SourceImage:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=2, min=1, max=20),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._session.get(url)
        except httpx.HTTPError as exc:
            raise SourceImageError(f"Failed to fetch source image: {exc}") from exc

        if response.is_error:
            raise SourceImageError(
                f"Failed to fetch source image: {response.status_code}",
                status_code=response.status_code,
            )
        content = response.content
        if not content:
            raise SourceImageError("Source image is empty")

        header_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        mime_type = header_type if header_type.startswith("image/") else detect_mime_type(content)
        logger.info("Fetched source image (%d bytes, %s)", len(content), mime_type)
        return SourceImage(content=content, mime_type=mime_type)
