"""Base classes for generation provider adapters."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from shared.enums import ProviderType
from shared.exceptions import (
    ProviderError,
    TerminalProviderError,
    TransientProviderError,
    ValidationError,
)
from shared.http_client import AsyncHTTPClient
from shared.models import ProviderStatus

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}


def classify_http_failure(provider: str, status: int, detail: str = "") -> ProviderError:
    """Map an HTTP error status onto the transient/terminal split."""
    message = f"{provider} request failed: {status}"
    if detail:
        message = f"{message} {detail[:500]}"
    if status >= 500 or status in TRANSIENT_STATUS_CODES:
        return TransientProviderError(message, provider=provider, status_code=status)
    return TerminalProviderError(message, provider=provider, status_code=status)


class GenerationProvider(ABC):
    """Uniform submit/poll/cancel interface over one external generation service."""

    provider_type: ProviderType
    content_type: str = "video/mp4"
    file_extension: str = ".mp4"

    @property
    def name(self) -> str:
        return self.provider_type.value

    def is_supported(self) -> bool:
        """Whether the provider is configured and usable."""
        return True

    def validate_request(self, payload: dict[str, Any]) -> None:
        """Raise ValidationError when the payload lacks required inputs."""

    @abstractmethod
    async def submit(self, payload: dict[str, Any]) -> str:
        """Start generation and return the provider's job handle."""

    @abstractmethod
    async def get_status(self, handle: str) -> ProviderStatus:
        """Return the current status mapped onto the job lifecycle."""

    async def cancel(self, handle: str) -> bool:
        """Ask the provider to stop work; unsupported by default."""
        return False

    def prepare_download_url(self, result_ref: str) -> str:
        """Return a URL the result can be fetched from."""
        return result_ref

    def parse_webhook(self, payload: dict[str, Any]) -> tuple[str, ProviderStatus]:
        """Extract (handle, status) from a push notification."""
        raise ValidationError(f"Provider {self.name} does not support webhooks")


class HTTPGenerationProvider(GenerationProvider):
    """Provider reached over a JSON HTTP API."""

    request_timeout: int = 30

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    async def _request(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if method not in ("GET", "POST"):
            raise ValueError(f"Unsupported HTTP method {method}")
        try:
            async with AsyncHTTPClient(timeout=self.request_timeout) as client:
                if method == "GET":
                    data = await client.get(url, headers=self._headers(), params=params)
                else:
                    data = await client.post(url, data=payload, headers=self._headers())
        except aiohttp.ClientResponseError as exc:
            raise classify_http_failure(self.name, exc.status, exc.message or "") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientProviderError(
                f"{self.name} request failed: {exc or type(exc).__name__}", provider=self.name
            ) from exc
        except ValueError as exc:
            raise TransientProviderError(f"{self.name} returned a malformed JSON body: {exc}", provider=self.name) from exc

        if not isinstance(data, dict):
            raise TransientProviderError(f"{self.name} returned an unexpected response body", provider=self.name)
        return data
