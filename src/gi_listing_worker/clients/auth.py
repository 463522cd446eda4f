from __future__ import annotations

import asyncio
import logging
import threading
from typing import Protocol

import google.auth
import google.auth.transport.requests
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError

from ..errors import TokenError

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class TokenSource(Protocol):
    async def token(self) -> str: ...


class GoogleTokenProvider:
    """
    Bearer tokens for Vertex AI from Application Default Credentials.

    A fresh token is requested on every call; the credential object itself is
    resolved once and shared, which is safe because refreshing holds a lock.
    """

    def __init__(self, scopes: tuple[str, ...] = (CLOUD_PLATFORM_SCOPE,)) -> None:
        self._scopes = list(scopes)
        self._credentials: Credentials | None = None
        self._lock = threading.Lock()

    def _fetch_token(self) -> str:
        with self._lock:
            try:
                if self._credentials is None:
                    self._credentials, project = google.auth.default(scopes=self._scopes)
                    logger.info("Loaded Google credentials (project=%s)", project)
                self._credentials.refresh(google.auth.transport.requests.Request())
            except GoogleAuthError as exc:
                raise TokenError(f"Unable to obtain access token for Vertex API: {exc}") from exc
            token = self._credentials.token
        if not token:
            raise TokenError("Unable to obtain access token for Vertex API")
        return token

    async def token(self) -> str:
        return await asyncio.to_thread(self._fetch_token)


class StaticTokenProvider:
    """Fixed token, for local runs with ``gcloud auth print-access-token`` and for tests."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def token(self) -> str:
        return self._token
