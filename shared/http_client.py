"""
HTTP client utilities for provider and storage communication.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import aiohttp

DOWNLOAD_CHUNK_SIZE = 1024 * 64


class AsyncHTTPClient:
    """Async HTTP client for provider communication."""

    def __init__(self, timeout: int = 30) -> None:
        """Initialize HTTP client."""
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "AsyncHTTPClient":
        """Enter async context manager."""
        self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        if self.session:
            await self.session.close()

    @staticmethod
    async def _prepare_request(coro_or_ctx: Any) -> Any:
        """Normalize aiohttp request result to an async context manager."""
        if asyncio.iscoroutine(coro_or_ctx):
            return await coro_or_ctx
        return coro_or_ctx

    @staticmethod
    async def _ensure_response_ok(response: Any) -> None:
        """Invoke raise_for_status, awaiting when necessary."""
        result = response.raise_for_status()
        if asyncio.iscoroutine(result):
            await result

    def _require_session(self) -> aiohttp.ClientSession:
        if not self.session:
            raise RuntimeError("HTTP client not initialized. Use async context manager.")
        return self.session

    async def get(
        self,
        url: str,
        headers: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform GET request."""
        session = self._require_session()
        if params:
            request = session.get(url, headers=headers, params=params)
        else:
            request = session.get(url, headers=headers)
        request_ctx = await self._prepare_request(request)
        async with request_ctx as response:
            await self._ensure_response_ok(response)
            return await response.json(content_type=None)

    async def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform POST request."""
        session = self._require_session()
        request_ctx = await self._prepare_request(session.post(url, json=data, headers=headers))
        async with request_ctx as response:
            await self._ensure_response_ok(response)
            return await response.json(content_type=None)

    async def download(
        self,
        url: str,
        destination: str | Path,
        headers: dict[str, Any] | None = None,
    ) -> int:
        """Stream a remote (or file://) resource to disk; returns bytes written."""
        destination = Path(destination)
        parsed = urlparse(url)
        if parsed.scheme == "file":
            source = Path(unquote(parsed.path))
            await asyncio.to_thread(shutil.copyfile, source, destination)
            return destination.stat().st_size

        session = self._require_session()
        request_ctx = await self._prepare_request(session.get(url, headers=headers))
        written = 0
        async with request_ctx as response:
            await self._ensure_response_ok(response)
            with open(destination, "wb") as stream:
                async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                    stream.write(chunk)
                    written += len(chunk)
        return written
