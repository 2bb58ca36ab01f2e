"""HeyGen avatar video provider."""

from __future__ import annotations

import logging
from typing import Any

from shared.enums import JobState, ProviderType
from shared.exceptions import TerminalProviderError, TransientProviderError, ValidationError
from shared.models import ProviderStatus
from shared.utils import config as service_config

from .base import HTTPGenerationProvider

logger = logging.getLogger(__name__)

STATUS_MAP: dict[str, JobState] = {
    "pending": JobState.PENDING,
    "queued": JobState.PENDING,
    "waiting": JobState.PENDING,
    "processing": JobState.PROCESSING,
    "in_progress": JobState.PROCESSING,
    "rendering": JobState.PROCESSING,
    "completed": JobState.COMPLETED,
    "success": JobState.COMPLETED,
    "done": JobState.COMPLETED,
    "failed": JobState.FAILED,
    "error": JobState.FAILED,
    "cancelled": JobState.CANCELLED,
    "canceled": JobState.CANCELLED,
}

TALKING_PHOTO_PREFIX = "TP-"
DEFAULT_BACKGROUND = "#F5DEB3"
# ETA based progress assumes renders take at most five minutes
MAX_RENDER_SECONDS = 300


def map_status(native: str | None) -> JobState:
    """Map HeyGen's status vocabulary; unknown values keep the job processing."""
    if not native:
        return JobState.PROCESSING
    state = STATUS_MAP.get(native.lower())
    if state is None:
        logger.warning(f"Unknown HeyGen status '{native}', treating as processing")
        return JobState.PROCESSING
    return state


def estimate_progress(native: str | None, eta: int | float | None) -> int:
    state = map_status(native)
    if state is JobState.COMPLETED:
        return 100
    if state is not JobState.PROCESSING:
        return 0
    if eta and eta > 0:
        elapsed = MAX_RENDER_SECONDS - eta
        return int(max(10, min(90, (elapsed * 100) // MAX_RENDER_SECONDS)))
    return 50


def _error_text(error: Any) -> str | None:
    if not error:
        return None
    if isinstance(error, dict):
        return error.get("message") or error.get("detail") or error.get("code") or str(error)
    return str(error)


class HeyGenProvider(HTTPGenerationProvider):
    """Avatar video generation through the HeyGen REST API."""

    provider_type = ProviderType.HEYGEN

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_avatar_id: str | None = None,
        webhook_url: str | None = None,
        test_mode: bool | None = None,
    ) -> None:
        self.api_key = api_key or service_config.get("heygen_api_key")
        self.base_url = (base_url or service_config.get("heygen_base_url", "https://api.heygen.com")).rstrip("/")
        self.default_avatar_id = default_avatar_id or service_config.get(
            "heygen_default_avatar_id", "Brandon_expressive2_public"
        )
        self.webhook_url = webhook_url or service_config.get("heygen_webhook_url")
        self.test_mode = service_config.get("heygen_test_mode", False) if test_mode is None else test_mode

    def is_supported(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["X-Api-Key"] = self.api_key or ""
        return headers

    def validate_request(self, payload: dict[str, Any]) -> None:
        audio_url = payload.get("audio_url")
        if not isinstance(audio_url, str) or not audio_url.strip():
            raise ValidationError("HeyGen avatar video requires an audio_url for the narration")

    def build_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Translate a job payload into a v2 video generate request."""
        avatar_id = payload.get("avatar_id") or self.default_avatar_id
        background = payload.get("background_color") or DEFAULT_BACKGROUND

        if avatar_id.startswith(TALKING_PHOTO_PREFIX):
            character = {
                "type": "talking_photo",
                "talking_photo_id": avatar_id[len(TALKING_PHOTO_PREFIX):],
                "scale": 1.0,
                "talking_style": "expressive",
                "expression": "happy",
                "super_resolution": True,
                "matting": True,
            }
        else:
            character = {
                "type": "avatar",
                "avatar_id": avatar_id,
                "scale": 1.0,
                "avatar_style": "normal",
            }

        request: dict[str, Any] = {
            "video_inputs": [
                {
                    "character": character,
                    "voice": {"type": "audio", "audio_url": payload["audio_url"]},
                    "background": {"type": "color", "value": background},
                }
            ],
            "dimension": {
                "width": int(payload.get("width", 1280)),
                "height": int(payload.get("height", 720)),
            },
            "caption": False,
            "test": bool(payload.get("test", self.test_mode)),
        }
        callback = payload.get("webhook_url") or self.webhook_url
        if callback:
            request["callback_url"] = callback
        return request

    async def submit(self, payload: dict[str, Any]) -> str:
        response = await self._request("POST", f"{self.base_url}/v2/video/generate", self.build_request(payload))
        error = _error_text(response.get("error"))
        if error:
            raise TerminalProviderError(f"HeyGen video creation failed: {error}", provider=self.name)

        data = response.get("data") or {}
        video_id = data.get("video_id") or data.get("id")
        if not video_id:
            raise TerminalProviderError(
                f"HeyGen video creation failed: {response.get('message') or 'no video id returned'}",
                provider=self.name,
            )
        logger.info(f"Created HeyGen video {video_id}")
        return str(video_id)

    async def get_status(self, handle: str) -> ProviderStatus:
        response = await self._request(
            "GET", f"{self.base_url}/v1/video_status.get", params={"video_id": handle}
        )
        data = response.get("data")
        if not data:
            # No data means HeyGen could not answer; try again on the next poll
            raise TransientProviderError(
                f"HeyGen status unavailable for {handle}: {response.get('message')}", provider=self.name
            )
        return self._status_from_data(data)

    def _status_from_data(self, data: dict[str, Any]) -> ProviderStatus:
        native = data.get("status")
        state = map_status(native)
        error_message = None
        if state is JobState.FAILED:
            error_message = _error_text(data.get("error")) or "HeyGen reported a failed render"
        return ProviderStatus(
            state=state,
            result_ref=data.get("video_url") if state is JobState.COMPLETED else None,
            progress_percent=estimate_progress(native, data.get("eta")),
            error_message=error_message,
            duration_seconds=data.get("duration"),
            raw_status=native,
        )

    async def cancel(self, handle: str) -> bool:
        try:
            await self._request("POST", f"{self.base_url}/v1/video.delete", {"video_id": handle})
        except (TransientProviderError, TerminalProviderError) as exc:
            logger.warning(f"Failed to cancel HeyGen video {handle}: {exc}")
            return False
        return True

    def parse_webhook(self, payload: dict[str, Any]) -> tuple[str, ProviderStatus]:
        event_type = payload.get("event_type") or ""
        event_data = payload.get("event_data") or {}
        video_id = event_data.get("video_id")
        if not video_id:
            raise ValidationError("HeyGen webhook is missing event_data.video_id")

        if event_type == "avatar_video.success":
            status = ProviderStatus(
                state=JobState.COMPLETED,
                result_ref=event_data.get("url") or event_data.get("video_url"),
                progress_percent=100,
                raw_status=event_type,
            )
        elif event_type == "avatar_video.fail":
            status = ProviderStatus(
                state=JobState.FAILED,
                error_message=event_data.get("msg") or event_data.get("message") or "HeyGen reported a failed render",
                raw_status=event_type,
            )
        else:
            raise ValidationError(f"Unsupported HeyGen webhook event '{event_type}'")
        return str(video_id), status
