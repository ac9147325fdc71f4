"""
Shared plumbing for venue clients: lazy aiohttp session, fetch metrics, errors.
"""

from typing import Optional

import aiohttp

HTTP_TIMEOUT_SEC = 30


class SourceError(RuntimeError):
    """A venue returned something we cannot use (HTTP error, bad envelope)."""


class HttpClient:
    """Owns one aiohttp session; subclasses count their own fetches/errors."""

    tag = "HTTP"

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 timeout_sec: float = HTTP_TIMEOUT_SEC):
        self._session = session
        self._owns_session = session is None
        self._timeout_sec = timeout_sec
        self._fetch_count = 0
        self._fetch_errors = 0
        self._last_fetch_count = 0

    async def _ensure_session(self):
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_sec)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def metrics(self) -> dict:
        return {
            "fetch_count": self._fetch_count,
            "fetch_errors": self._fetch_errors,
            "last_fetch_markets": self._last_fetch_count,
        }
