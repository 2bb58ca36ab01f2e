"""Shotstack final render provider."""

from __future__ import annotations

import logging
from typing import Any

from shared.enums import JobState, ProviderType
from shared.exceptions import TerminalProviderError, ValidationError
from shared.models import ProviderStatus
from shared.utils import config as service_config

from .base import HTTPGenerationProvider

logger = logging.getLogger(__name__)

STATUS_MAP: dict[str, JobState] = {
    "queued": JobState.PENDING,
    "fetching": JobState.PROCESSING,
    "rendering": JobState.PROCESSING,
    "saving": JobState.PROCESSING,
    "done": JobState.COMPLETED,
    "failed": JobState.FAILED,
}

# Coarse progress per render stage; the render API reports no percentage
STAGE_PROGRESS = {"queued": 0, "fetching": 20, "rendering": 50, "saving": 90, "done": 100}

DEFAULT_OUTPUT = {"format": "mp4", "resolution": "hd"}
ENVIRONMENT_PATHS = {"production": "edit/v1", "sandbox": "edit/stage", "stage": "edit/stage"}


def map_status(native: str | None) -> JobState:
    """Map Shotstack's render stages; unknown values keep the job queued."""
    if not native:
        return JobState.PENDING
    state = STATUS_MAP.get(native.lower())
    if state is None:
        logger.warning(f"Unknown Shotstack status '{native}', treating as queued")
        return JobState.PENDING
    return state


class ShotstackProvider(HTTPGenerationProvider):
    """Renders a caller-built timeline through the Shotstack Edit API.

    The timeline is passed through untouched; composing it from slides and
    narration happens upstream.
    """

    provider_type = ProviderType.SHOTSTACK

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        environment: str | None = None,
        callback_url: str | None = None,
    ) -> None:
        self.api_key = api_key or service_config.get("shotstack_api_key")
        self.environment = (environment or service_config.get("shotstack_environment", "sandbox")).lower()
        if self.environment not in ENVIRONMENT_PATHS:
            raise ValueError(f"Unknown Shotstack environment '{self.environment}'")
        root = (base_url or service_config.get("shotstack_base_url", "https://api.shotstack.io")).rstrip("/")
        self.base_url = f"{root}/{ENVIRONMENT_PATHS[self.environment]}"
        self.callback_url = callback_url or service_config.get("shotstack_callback_url")

    def is_supported(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["x-api-key"] = self.api_key or ""
        return headers

    def validate_request(self, payload: dict[str, Any]) -> None:
        timeline = payload.get("timeline")
        if not isinstance(timeline, dict) or not timeline:
            raise ValidationError("Shotstack render requires a timeline object")
        output = payload.get("output")
        if output is not None and not isinstance(output, dict):
            raise ValidationError("Shotstack output settings must be an object")

    def build_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        edit: dict[str, Any] = {
            "timeline": payload["timeline"],
            "output": payload.get("output") or dict(DEFAULT_OUTPUT),
        }
        callback = payload.get("callback") or self.callback_url
        if callback:
            edit["callback"] = callback
        return edit

    async def submit(self, payload: dict[str, Any]) -> str:
        response = await self._request("POST", f"{self.base_url}/render", self.build_request(payload))
        render_id = (response.get("response") or {}).get("id")
        if not render_id:
            message = response.get("message") or "Shotstack did not return a render id"
            raise TerminalProviderError(message, provider=self.name)
        logger.info(f"Queued Shotstack render {render_id}")
        return str(render_id)

    async def get_status(self, handle: str) -> ProviderStatus:
        response = await self._request("GET", f"{self.base_url}/render/{handle}")
        return self.status_from_render(response.get("response") or {})

    def status_from_render(self, render: dict[str, Any]) -> ProviderStatus:
        native = render.get("status")
        state = map_status(native)
        if state is JobState.COMPLETED:
            return ProviderStatus(
                state=state, result_ref=render.get("url"), progress_percent=100, raw_status=native
            )
        if state is JobState.FAILED:
            return ProviderStatus(
                state=state,
                error_message=render.get("error") or "Shotstack render failed",
                raw_status=native,
            )
        return ProviderStatus(
            state=state,
            progress_percent=STAGE_PROGRESS.get((native or "").lower(), 0),
            raw_status=native,
        )

    def parse_webhook(self, payload: dict[str, Any]) -> tuple[str, ProviderStatus]:
        render_id = payload.get("id")
        if not render_id:
            raise ValidationError("Shotstack callback is missing the render id")
        status = self.status_from_render(payload)
        if not status.state.is_terminal:
            raise ValidationError(f"Unsupported Shotstack callback status '{payload.get('status')}'")
        return str(render_id), status
