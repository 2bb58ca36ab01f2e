"""
Error taxonomy for the generation pipeline.
"""

from typing import Any


class GenerationError(Exception):
    """Base class for all generation pipeline errors."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message


class ValidationError(GenerationError):
    """A precondition was not met at submission time; no job was created."""


class ProviderError(GenerationError):
    """A provider call failed."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, **details)
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx; safe to retry."""


class TerminalProviderError(ProviderError):
    """The provider explicitly rejected or failed the request."""


class GenerationTimeoutError(GenerationError):
    """No terminal status was reported within the maximum duration."""


class PublishError(GenerationError):
    """Downloading or uploading a completed result failed."""


class InvalidStateTransition(GenerationError):
    """A state change that the job lifecycle does not allow."""

    def __init__(self, job_id: str, current: Any, requested: Any) -> None:
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        super().__init__(
            f"Job {job_id} cannot move from {current_value} to {requested_value}",
            job_id=job_id,
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobNotFoundError(GenerationError):
    """Unknown generation job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Generation job {job_id} not found", job_id=job_id)
        self.job_id = job_id


class AssetNotFoundError(GenerationError):
    """Unknown asset id."""

    def __init__(self, asset_id: str) -> None:
        super().__init__(f"Asset {asset_id} not found", asset_id=asset_id)
        self.asset_id = asset_id
