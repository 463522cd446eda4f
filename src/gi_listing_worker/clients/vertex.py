from __future__ import annotations

import logging
from typing import Any, Dict, Type
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import VertexConfig
from ..errors import UpstreamError
from .auth import TokenSource

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 2000


def is_retryable(exc: BaseException) -> bool:
    """Transport failures, 429 and 5xx are worth another attempt; other statuses are final."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, UpstreamError) and exc.status_code is not None:
        return exc.status_code == 429 or exc.status_code >= 500
    return False


class VertexClient:
    """Async client for Vertex AI ``generateContent`` and ``predict`` REST calls."""

    def __init__(
        self,
        config: VertexConfig,
        tokens: TokenSource,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._tokens = tokens
        self._session = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._session.aclose()

    def model_url(self, model: str, method: str = "predict") -> str:
        """
        Resolve the REST URL for ``model``.

        A full resource name (``projects/.../models/ID``) is used verbatim; a short
        name such as ``imagegeneration@006`` resolves to the Google publisher path.
        """
        if not model:
            raise ValueError("Model resource name is empty")
        base = self._config.region_base
        if model.startswith("projects/"):
            return f"{base}/{model}:{method}"
        return (
            f"{base}/projects/{self._config.project_id}/locations/{self._config.location}"
            f"/publishers/google/models/{quote(model, safe='@.-_')}:{method}"
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(multiplier=2, min=1, max=20),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        )

    async def _post_json(
        self,
        url: str,
        body: Dict[str, Any],
        error_cls: Type[UpstreamError],
        label: str,
    ) -> Dict[str, Any]:
        try:
            return await self._post_with_retries(url, body, error_cls, label)
        except httpx.HTTPError as exc:
            raise error_cls(f"{label} request failed: {exc}") from exc

    async def _post_with_retries(
        self,
        url: str,
        body: Dict[str, Any],
        error_cls: Type[UpstreamError],
        label: str,
    ) -> Dict[str, Any]:
        async for attempt in self._retrying():
            with attempt:
                token = await self._tokens.token()
                response = await self._session.post(
                    url,
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
                if response.is_error:
                    text = response.text[:_ERROR_BODY_LIMIT]
                    logger.error("%s request failed: %s %s", label, response.status_code, text)
                    raise error_cls(
                        f"{label} request failed with status {response.status_code}: {text}",
                        status_code=response.status_code,
                        body=text,
                    )
                try:
                    data = response.json()
                except ValueError as exc:
                    raise error_cls(
                        f"{label} returned non-JSON response",
                        status_code=response.status_code,
                        body=response.text[:_ERROR_BODY_LIMIT],
                    ) from exc
                if not isinstance(data, dict):
                    raise error_cls(f"{label} returned unexpected payload type {type(data).__name__}")
                return data
        raise AssertionError("unreachable")  # pragma: no cover

    async def generate_content(
        self,
        model: str,
        body: Dict[str, Any],
        error_cls: Type[UpstreamError] = UpstreamError,
    ) -> Dict[str, Any]:
        return await self._post_json(
            self.model_url(model, "generateContent"), body, error_cls, f"generateContent[{model}]"
        )

    async def predict(
        self,
        model: str,
        body: Dict[str, Any],
        error_cls: Type[UpstreamError] = UpstreamError,
    ) -> Dict[str, Any]:
        return await self._post_json(self.model_url(model, "predict"), body, error_cls, f"predict[{model}]")

    async def __aenter__(self) -> "VertexClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()


def candidate_text(response: Dict[str, Any]) -> str:
    """Concatenate the text parts of the first ``generateContent`` candidate."""
    candidates = response.get("candidates") or []
    if not candidates:
        return ""
    content = (candidates[0] or {}).get("content") or {}
    parts = content.get("parts") or []
    texts = [part.get("text", "") for part in parts if isinstance(part, dict) and "text" in part]
    return "\n".join(text for text in texts if text)
