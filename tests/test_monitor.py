"""Tests for status monitoring, timeouts and automatic publishing."""

import asyncio
import hashlib
from datetime import timedelta

import pytest

from services.generation.monitor import MonitorPolicy, StatusMonitor
from services.generation.providers import StubGenerationProvider
from shared.config import ServiceConfig
from shared.enums import JobState, ProviderType, UploadState
from shared.exceptions import TerminalProviderError, TransientProviderError
from shared.models import ProviderStatus
from shared.utils import as_utc

PROCESSING = ProviderStatus(state=JobState.PROCESSING, progress_percent=40)


class SlowStatusProvider(StubGenerationProvider):
    """Stub whose status calls hang longer than the status timeout."""

    async def get_status(self, handle: str) -> ProviderStatus:
        self.status_calls.append(handle)
        await asyncio.sleep(1)
        return PROCESSING


class ConcurrencyTrackingProvider(StubGenerationProvider):
    """Stub that records how many status calls overlap."""

    def __init__(self, delay: float, **kwargs) -> None:
        super().__init__(**kwargs)
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def get_status(self, handle: str) -> ProviderStatus:
        self.status_calls.append(handle)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            return PROCESSING
        finally:
            self.active -= 1


class TestMonitorPolicy:
    """Per-provider timing resolution."""

    def test_provider_override_then_default(self) -> None:
        settings = ServiceConfig()
        settings.set_pipeline_config(
            {
                "generation": {
                    "monitor": {
                        "default": {"initial_delay": 5, "poll_interval": 10, "max_duration": 600},
                        "providers": {"heygen": {"initial_delay": 10, "max_duration": 900}},
                    }
                }
            }
        )
        heygen = MonitorPolicy.from_config(ProviderType.HEYGEN, settings)
        veo = MonitorPolicy.from_config(ProviderType.VEO, settings)

        assert heygen == MonitorPolicy(initial_delay=10, poll_interval=10, max_duration=900, status_timeout=30)
        assert veo == MonitorPolicy(initial_delay=5, poll_interval=10, max_duration=600, status_timeout=30)


class TestStatusMonitor:
    """Polling drives jobs to exactly one terminal state."""

    @pytest.mark.asyncio
    async def test_completed_job_is_published(self, build_service, stub_provider, storage, wait_for_state, wait_for) -> None:
        service = build_service()
        try:
            job_id = await service.submit("deck-1/slide-2", ProviderType.STUB, {"prompt": "hello"})
            job = await wait_for_state(service, job_id)
            assert job.state == JobState.COMPLETED.value
            assert job.progress_percent == 100
            assert job.poll_count >= 3

            job = await wait_for(lambda: (j := service.get_job(job_id)).asset_id and j)
            asset = service.asset_store.require(job.asset_id)
            expected = hashlib.sha256(b'{"prompt": "hello"}').digest() * 64

            assert asset.upload_state == UploadState.COMPLETED.value
            assert asset.key == f"generated/deck-1_slide-2/{job_id}.mp4"
            assert asset.size_bytes == len(expected)
            assert asset.checksum == hashlib.sha256(expected).hexdigest()
            assert storage.path_for(asset.bucket, asset.key).read_bytes() == expected
            assert not service.monitor.is_monitoring(job_id)
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_failed_job_is_not_published(self, build_service, wait_for_state) -> None:
        provider = StubGenerationProvider(
            script=[PROCESSING, ProviderStatus(state=JobState.FAILED, error_message="quota exceeded")]
        )
        service = build_service(provider=provider)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            job = await wait_for_state(service, job_id)
            await service.scheduler.drain()

            assert job.state == JobState.FAILED.value
            assert job.error_message == "quota exceeded"
            assert job.asset_id is None
            assert service.asset_store.count() == 0
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_fails_job_and_stops_polling(self, build_service, wait_for_state) -> None:
        provider = StubGenerationProvider(script=[PROCESSING])
        policy = MonitorPolicy(initial_delay=0.01, poll_interval=0.01, max_duration=0.1, status_timeout=1)
        service = build_service(provider=provider, policy=policy)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            job = await wait_for_state(service, job_id)

            assert job.state == JobState.FAILED.value
            assert job.error_message == "Generation timeout after 0.1 seconds"
            calls = len(provider.status_calls)
            await asyncio.sleep(0.05)
            assert len(provider.status_calls) == calls
            assert service.monitor.active_count() == 0
            assert service.scheduler.active_timers == 0
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_transient_errors_keep_polling(self, build_service, wait_for_state) -> None:
        provider = StubGenerationProvider(
            script=[
                TransientProviderError("503 from provider"),
                TransientProviderError("connection reset"),
                ProviderStatus(state=JobState.COMPLETED, result_ref="file:///nonexistent/result.mp4"),
            ]
        )
        service = build_service(provider=provider)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            job = await wait_for_state(service, job_id)
            assert job.state == JobState.COMPLETED.value
            assert job.poll_count >= 3
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_terminal_poll_error_fails_job(self, build_service, wait_for_state) -> None:
        provider = StubGenerationProvider(script=[TerminalProviderError("404 video not found")])
        service = build_service(provider=provider)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            job = await wait_for_state(service, job_id)
            assert job.state == JobState.FAILED.value
            assert job.error_message == "404 video not found"
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_slow_status_check_times_out_without_failing(self, build_service, wait_for) -> None:
        provider = SlowStatusProvider()
        policy = MonitorPolicy(initial_delay=0.01, poll_interval=0.01, max_duration=5, status_timeout=0.02)
        service = build_service(provider=provider, policy=policy)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            job = await wait_for(lambda: (j := service.get_job(job_id)).poll_count >= 2 and j)
            assert job.state == JobState.PROCESSING.value
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_completion_without_result_fails(self, build_service, wait_for_state) -> None:
        provider = StubGenerationProvider(script=[ProviderStatus(state=JobState.COMPLETED)])
        service = build_service(provider=provider)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            job = await wait_for_state(service, job_id)
            assert job.state == JobState.FAILED.value
            assert job.error_message == "Provider reported completion without a result"
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_single_monitor_per_job(self, build_service) -> None:
        service = build_service(policy=MonitorPolicy(initial_delay=30, poll_interval=30, max_duration=600))
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            assert service.monitor.start_monitoring(job_id) is False
            assert service.monitor.active_count() == 1
            assert service.scheduler.active_timers == 2

            assert service.monitor.stop_monitoring(job_id) is True
            assert service.monitor.stop_monitoring(job_id) is False
            assert service.monitor.start_monitoring("unknown") is False
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_resume_uses_remaining_time(self, build_service, wait_for_state) -> None:
        policy = MonitorPolicy(initial_delay=30, poll_interval=30, max_duration=600)
        service = build_service(policy=policy)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            service.monitor.shutdown()
            assert service.monitor.active_count() == 0

            # Restarted process whose clock is past the job's deadline
            later = as_utc(service.get_job(job_id).started_at) + timedelta(seconds=700)
            monitor = StatusMonitor(
                service.job_store,
                service.providers,
                service.scheduler,
                policies={ProviderType.STUB: policy},
                clock=lambda: later,
            )
            assert monitor.resume_active() == 1

            job = await wait_for_state(service, job_id)
            assert job.state == JobState.FAILED.value
            assert job.error_message == "Generation timeout after 600 seconds"
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_restart_during_in_flight_poll_keeps_one_status_call(self, build_service, wait_for) -> None:
        provider = ConcurrencyTrackingProvider(delay=0.2)
        policy = MonitorPolicy(initial_delay=0.01, poll_interval=0.01, max_duration=5, status_timeout=1)
        service = build_service(provider=provider, policy=policy)
        try:
            job_id = await service.submit("slide-1", ProviderType.STUB, {"prompt": "hello"})
            await wait_for(lambda: provider.active == 1)

            assert service.monitor.stop_monitoring(job_id) is True
            assert service.monitor.start_monitoring(job_id) is True
            await wait_for(lambda: len(provider.status_calls) >= 3, timeout=3.0)

            assert provider.max_active == 1
            assert service.monitor.active_count() == 1
            assert service.get_job(job_id).state == JobState.PROCESSING.value
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_poll_locks_are_released(self, build_service, wait_for_state, wait_for) -> None:
        service = build_service()
        try:
            job_ids = [
                await service.submit(f"slide-{index}", ProviderType.STUB, {"prompt": f"p{index}"}) for index in range(3)
            ]
            for job_id in job_ids:
                await wait_for_state(service, job_id)
            await service.scheduler.drain()

            assert await wait_for(lambda: len(service.monitor._poll_locks) == 0)
            assert await wait_for(lambda: len(service.publisher._locks) == 0)
            assert all(service.get_job(job_id).asset_id for job_id in job_ids)
        finally:
            await service.shutdown()
