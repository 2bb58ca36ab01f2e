"""Validate, submit to a provider and record the job."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from models.database import GenerationJob
from shared.enums import JobState, ProviderType
from shared.exceptions import (
    InvalidStateTransition,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from shared.utils import setup_logging

from .job_store import TERMINAL_STATES, JobStore
from .monitor import StatusMonitor
from .providers import GenerationProvider


class SubmissionCoordinator:
    """Starts provider work and hands the job to the monitor without waiting for it.

    The provider is called before anything is persisted, so a failed
    submission never leaves a job record behind.
    """

    def __init__(
        self,
        job_store: JobStore,
        providers: Mapping[ProviderType, GenerationProvider],
        monitor: StatusMonitor,
        submit_timeout: float = 30.0,
    ) -> None:
        self.job_store = job_store
        self.providers = providers
        self.monitor = monitor
        self.submit_timeout = submit_timeout
        self.logger = setup_logging("generation-submission")

    def resolve_provider(self, provider_type: ProviderType | str) -> GenerationProvider:
        try:
            provider_type = ProviderType(provider_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown provider '{provider_type}'") from exc
        provider = self.providers.get(provider_type)
        if provider is None or not provider.is_supported():
            raise ValidationError(f"Provider '{provider_type.value}' is not configured")
        return provider

    def validate(
        self,
        subject_ref: str,
        provider_type: ProviderType | str,
        request_payload: dict[str, Any],
    ) -> GenerationProvider:
        """Check upstream inputs; raises ValidationError before any side effect."""
        if not isinstance(subject_ref, str) or not subject_ref.strip():
            raise ValidationError("subject_ref is required")
        if not isinstance(request_payload, dict) or not request_payload:
            raise ValidationError("request_payload must be a non-empty object")
        provider = self.resolve_provider(provider_type)
        provider.validate_request(request_payload)
        return provider

    async def submit(
        self,
        subject_ref: str,
        provider_type: ProviderType | str,
        request_payload: dict[str, Any],
    ) -> str:
        """Start generation and return the new job id; completion is observed separately."""
        provider = self.validate(subject_ref, provider_type, request_payload)
        payload = dict(request_payload)

        try:
            handle = await asyncio.wait_for(provider.submit(payload), self.submit_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(
                f"{provider.name} did not accept the request within {self.submit_timeout:.0f}s",
                provider=provider.name,
            ) from exc
        except (ProviderError, ValidationError):
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.exception(f"Unexpected error submitting to {provider.name}")
            raise TransientProviderError(f"{provider.name} submission failed: {exc}", provider=provider.name) from exc

        job = self.job_store.create(subject_ref, provider.provider_type, payload)
        job = self.job_store.mark_submitted(job.id, handle)
        self.monitor.start_monitoring(job.id)
        self.logger.info(f"Submitted job {job.id} for {subject_ref} to {provider.name} (handle {handle})")
        return job.id

    def get_status(self, job_id: str) -> GenerationJob:
        return self.job_store.require(job_id)

    async def cancel(self, job_id: str) -> GenerationJob:
        """Record a user cancellation, then ask the provider to stop on a best-effort basis."""
        job = self.job_store.require(job_id)
        current = JobState(job.state)
        if current in TERMINAL_STATES:
            raise InvalidStateTransition(job_id, current, JobState.CANCELLED)

        job = self.job_store.transition(job_id, JobState.CANCELLED, error_message="Cancelled by user")
        self.monitor.stop_monitoring(job_id)

        provider = self.providers.get(ProviderType(job.provider_type))
        if provider is not None and job.provider_job_handle:
            try:
                cancelled = await asyncio.wait_for(provider.cancel(job.provider_job_handle), self.submit_timeout)
            except (ProviderError, asyncio.TimeoutError) as exc:
                self.logger.warning(f"Provider cancel for job {job_id} failed: {exc}")
            else:
                self.logger.info(f"Provider cancel for job {job_id} acknowledged: {cancelled}")
        return job
