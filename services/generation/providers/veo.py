"""Google Veo intro video provider."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from shared.enums import JobState, ProviderType
from shared.exceptions import TerminalProviderError, ValidationError
from shared.models import ProviderStatus
from shared.utils import config as service_config

from .base import HTTPGenerationProvider

logger = logging.getLogger(__name__)

ASPECT_RATIOS = {"16:9", "9:16"}
RESOLUTIONS = {"720p", "1080p"}


class VeoProvider(HTTPGenerationProvider):
    """Video generation through the Gemini API long-running predict endpoint."""

    provider_type = ProviderType.VEO

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
    ) -> None:
        self.api_key = api_key or service_config.get("veo_api_key")
        self.base_url = (
            base_url or service_config.get("veo_base_url", "https://generativelanguage.googleapis.com/v1beta")
        ).rstrip("/")
        self.model = model or service_config.get("veo_model", "veo-3.0-fast-generate-001")

    def is_supported(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["x-goog-api-key"] = self.api_key or ""
        return headers

    def validate_request(self, payload: dict[str, Any]) -> None:
        prompt = payload.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Veo video generation requires a prompt")
        aspect_ratio = payload.get("aspect_ratio")
        if aspect_ratio and aspect_ratio not in ASPECT_RATIOS:
            raise ValidationError(f"Unsupported aspect ratio '{aspect_ratio}'")
        resolution = payload.get("resolution")
        if resolution and resolution not in RESOLUTIONS:
            raise ValidationError(f"Unsupported resolution '{resolution}'")

    def build_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        parameters: dict[str, Any] = {
            "aspectRatio": payload.get("aspect_ratio") or "16:9",
            "resolution": payload.get("resolution") or "720p",
        }
        if payload.get("negative_prompt"):
            parameters["negativePrompt"] = payload["negative_prompt"]
        return {"instances": [{"prompt": payload["prompt"]}], "parameters": parameters}

    def operation_url(self, handle: str) -> str:
        if handle.startswith("models/") or handle.startswith("operations/"):
            return f"{self.base_url}/{handle}"
        return f"{self.base_url}/operations/{handle}"

    async def submit(self, payload: dict[str, Any]) -> str:
        url = f"{self.base_url}/models/{self.model}:predictLongRunning"
        response = await self._request("POST", url, self.build_request(payload))
        name = response.get("name")
        if not name:
            raise TerminalProviderError("Veo did not return an operation name", provider=self.name)
        logger.info(f"Started Veo operation {name}")
        return str(name)

    async def get_status(self, handle: str) -> ProviderStatus:
        operation = await self._request("GET", self.operation_url(handle))
        return self.status_from_operation(operation)

    def status_from_operation(self, operation: dict[str, Any]) -> ProviderStatus:
        metadata = operation.get("metadata") or {}
        progress = metadata.get("progressPercent")

        if not operation.get("done"):
            return ProviderStatus(
                state=JobState.PROCESSING,
                progress_percent=int(progress) if isinstance(progress, (int, float)) else None,
                raw_status="running",
            )

        error = operation.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return ProviderStatus(state=JobState.FAILED, error_message=message or "Veo generation failed", raw_status="error")

        samples = (
            (operation.get("response") or {}).get("generateVideoResponse", {}).get("generatedSamples") or []
        )
        uri = samples[0].get("video", {}).get("uri") if samples else None
        if not uri:
            filtered = (operation.get("response") or {}).get("generateVideoResponse", {}).get("raiMediaFilteredReasons")
            reason = "; ".join(filtered) if filtered else "Veo finished without a generated video"
            return ProviderStatus(state=JobState.FAILED, error_message=reason, raw_status="done")

        return ProviderStatus(state=JobState.COMPLETED, result_ref=uri, progress_percent=100, raw_status="done")

    def prepare_download_url(self, result_ref: str) -> str:
        """Generated files are only downloadable with the API key attached."""
        if not self.api_key or not result_ref.startswith("http"):
            return result_ref
        parsed = urlparse(result_ref)
        query = parse_qs(parsed.query)
        if "key" in query:
            return result_ref
        extra = urlencode({"key": self.api_key})
        new_query = f"{parsed.query}&{extra}" if parsed.query else extra
        return urlunparse(parsed._replace(query=new_query))
