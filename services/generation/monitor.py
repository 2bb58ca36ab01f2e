"""Per-job status polling with a hard timeout."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any

from models.database import GenerationJob
from shared.config import ServiceConfig
from shared.enums import JobState, ProviderType
from shared.exceptions import (
    GenerationTimeoutError,
    InvalidStateTransition,
    PublishError,
    TerminalProviderError,
    TransientProviderError,
)
from shared.models import ProviderStatus
from shared.utils import as_utc, config as service_config, setup_logging, utcnow

from .job_store import TERMINAL_STATES, JobStore
from .locks import KeyedLocks
from .providers import GenerationProvider
from .registry import MonitorHandle, MonitorRegistry
from .scheduler import Scheduler

PublishCallback = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class MonitorPolicy:
    """Polling timings for one provider, in seconds."""

    initial_delay: float = 5.0
    poll_interval: float = 10.0
    max_duration: float = 600.0
    status_timeout: float = 30.0

    @classmethod
    def from_config(cls, provider_type: ProviderType, settings: ServiceConfig | None = None) -> "MonitorPolicy":
        """Provider override, then the default section, then the built-in value."""
        settings = settings or service_config
        values: dict[str, float] = {}
        for item in fields(cls):
            default = settings.get_pipeline_value(f"generation.monitor.default.{item.name}", item.default)
            value = settings.get_pipeline_value(
                f"generation.monitor.providers.{ProviderType(provider_type).value}.{item.name}", default
            )
            values[item.name] = float(value)
        return cls(**values)


class StatusMonitor:
    """Polls providers until each job reaches a terminal state or times out.

    At most one monitor exists per job id. Each monitor owns a fixed-delay poll
    timer and a one-shot deadline timer; both are cancelled together when the
    job becomes terminal or monitoring is stopped explicitly.
    """

    def __init__(
        self,
        job_store: JobStore,
        providers: Mapping[ProviderType, GenerationProvider],
        scheduler: Scheduler,
        registry: MonitorRegistry | None = None,
        policies: Mapping[ProviderType, MonitorPolicy] | None = None,
        on_completed: PublishCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.job_store = job_store
        self.providers = providers
        self.scheduler = scheduler
        self.registry = registry or MonitorRegistry()
        self.policies = dict(policies or {})
        self.on_completed = on_completed
        self.clock = clock
        self.logger = setup_logging("generation-monitor")
        self._poll_locks = KeyedLocks()

    def policy_for(self, provider_type: ProviderType | str) -> MonitorPolicy:
        provider_type = ProviderType(provider_type)
        policy = self.policies.get(provider_type)
        if policy is None:
            policy = MonitorPolicy.from_config(provider_type)
            self.policies[provider_type] = policy
        return policy

    def start_monitoring(self, job_id: str) -> bool:
        """Begin polling a job; returns False if it is already monitored or not monitorable."""
        job = self.job_store.get(job_id)
        if job is None:
            self.logger.warning(f"Cannot monitor unknown job {job_id}")
            return False
        if JobState(job.state) in TERMINAL_STATES:
            self.logger.info(f"Job {job_id} is already {job.state}; not monitoring")
            return False

        handle, created = self.registry.register_if_absent(job_id, lambda: MonitorHandle(job_id=job_id))
        if not created:
            self.logger.debug(f"Job {job_id} is already being monitored")
            return False

        policy = self.policy_for(job.provider_type)
        remaining = policy.max_duration - self._elapsed(job)
        handle.poll_task = self.scheduler.schedule_with_fixed_delay(
            lambda: self._poll(job_id, handle),
            initial_delay=policy.initial_delay,
            interval=policy.poll_interval,
            name=f"poll-{job_id}",
        )
        handle.timeout_task = self.scheduler.schedule_once(
            lambda: self._on_timeout(job_id),
            delay=max(remaining, 0.0),
            name=f"timeout-{job_id}",
        )
        self.logger.info(
            f"Monitoring job {job_id} ({job.provider_type}): first poll in {policy.initial_delay}s, "
            f"every {policy.poll_interval}s, timeout in {max(remaining, 0.0):.0f}s"
        )
        return True

    def stop_monitoring(self, job_id: str) -> bool:
        """Cancel the job's timers without interrupting an in-flight provider call."""
        handle = self.registry.pop(job_id)
        if handle is None:
            return False
        handle.cancel()
        self.logger.debug(f"Stopped monitoring job {job_id}")
        return True

    def is_monitoring(self, job_id: str) -> bool:
        return job_id in self.registry

    def active_count(self) -> int:
        return len(self.registry)

    def resume_active(self) -> int:
        """Re-register monitors for every PROCESSING job, e.g. after a restart."""
        resumed = 0
        for job in self.job_store.list_by_states([JobState.PROCESSING]):
            if self.start_monitoring(job.id):
                resumed += 1
        if resumed:
            self.logger.info(f"Resumed monitoring for {resumed} job(s)")
        return resumed

    def shutdown(self) -> None:
        for handle in self.registry.clear():
            handle.cancel()

    def _elapsed(self, job: GenerationJob) -> float:
        started = as_utc(job.started_at) or as_utc(job.created_at)
        if started is None:
            return 0.0
        return max((self.clock() - started).total_seconds(), 0.0)

    def _superseded(self, job_id: str, handle: MonitorHandle) -> bool:
        current = self.registry.get(job_id)
        return current is not None and current is not handle

    async def _poll(self, job_id: str, handle: MonitorHandle) -> None:
        # A restarted monitor waits for the previous monitor's in-flight call
        async with self._poll_locks.hold(job_id):
            if self._superseded(job_id, handle):
                return
            await self._poll_once(job_id, handle)

    async def _poll_once(self, job_id: str, handle: MonitorHandle) -> None:
        job = self.job_store.get(job_id)
        if job is None or JobState(job.state) in TERMINAL_STATES:
            self.stop_monitoring(job_id)
            return
        if not job.provider_job_handle:
            self.logger.warning(f"Job {job_id} has no provider handle yet; skipping poll")
            return

        provider_type = ProviderType(job.provider_type)
        provider = self.providers.get(provider_type)
        if provider is None:
            self.logger.error(f"Provider {provider_type.value} is not configured; cannot poll job {job_id}")
            return

        policy = self.policy_for(provider_type)
        try:
            status = await asyncio.wait_for(provider.get_status(job.provider_job_handle), policy.status_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Status check for job {job_id} timed out; retrying next tick")
            self.job_store.record_poll(job_id)
            return
        except TransientProviderError as exc:
            self.logger.warning(f"Transient error polling job {job_id}: {exc}")
            self.job_store.record_poll(job_id)
            return
        except TerminalProviderError as exc:
            self.logger.error(f"Provider rejected status check for job {job_id}: {exc}")
            status = ProviderStatus(state=JobState.FAILED, error_message=str(exc))
        except Exception as exc:  # noqa: BLE001
            self.logger.exception(f"Unexpected error polling job {job_id}: {exc}")
            self.job_store.record_poll(job_id)
            return

        if self._superseded(job_id, handle):
            self.logger.debug(f"Dropping status for job {job_id} from a replaced monitor")
            return
        self.job_store.record_poll(job_id, status.progress_percent)
        await self.apply_status(job_id, status)

    async def apply_status(self, job_id: str, status: ProviderStatus) -> GenerationJob | None:
        """Single state-update path shared by the poll tick and webhook receivers."""
        job = self.job_store.get(job_id)
        if job is None:
            self.stop_monitoring(job_id)
            return None
        if JobState(job.state) in TERMINAL_STATES:
            self.stop_monitoring(job_id)
            return job
        if not status.state.is_terminal:
            return job

        target = status.state
        error_message = status.error_message
        if target is JobState.COMPLETED and not status.result_ref:
            target = JobState.FAILED
            error_message = "Provider reported completion without a result"
        elif target is JobState.FAILED and not error_message:
            error_message = "Provider reported failure"
        elif target is JobState.CANCELLED and not error_message:
            error_message = "Cancelled by provider"

        try:
            job = self.job_store.transition(
                job_id,
                target,
                result_ref=status.result_ref if target is JobState.COMPLETED else None,
                error_message=error_message if target is not JobState.COMPLETED else None,
                progress_percent=status.progress_percent,
            )
        except InvalidStateTransition as exc:
            self.logger.info(f"Ignoring status for job {job_id}: {exc}")
            self.stop_monitoring(job_id)
            return self.job_store.get(job_id)

        self.stop_monitoring(job_id)
        if target is JobState.COMPLETED and self.on_completed is not None:
            self.scheduler.spawn(self.publish_result(job_id), name=f"publish-{job_id}")
        return job

    async def publish_result(self, job_id: str) -> None:
        """Run the publish callback, logging publish failures instead of raising."""
        try:
            await self.on_completed(job_id)
        except PublishError as exc:
            self.logger.error(f"Publishing job {job_id} failed; retry is safe: {exc}")

    async def _on_timeout(self, job_id: str) -> None:
        job = self.job_store.get(job_id)
        if job is None or JobState(job.state) in TERMINAL_STATES:
            self.stop_monitoring(job_id)
            return

        policy = self.policy_for(job.provider_type)
        error = GenerationTimeoutError(
            f"Generation timeout after {policy.max_duration:g} seconds", job_id=job_id
        )
        try:
            self.job_store.transition(job_id, JobState.FAILED, error_message=str(error))
            self.logger.warning(f"Job {job_id}: {error}")
        except InvalidStateTransition as exc:
            self.logger.info(f"Timeout for job {job_id} raced a terminal update: {exc}")
        finally:
            self.stop_monitoring(job_id)
