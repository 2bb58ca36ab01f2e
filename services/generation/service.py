"""Generation service wiring: stores, providers, monitor, publisher, URLs and batches."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from models.database import GenerationJob, WebhookEvent
from services.storage import ObjectStorage, build_storage
from services.websocket_progress import JobProgressNotifier, WebSocketProgressManager
from shared.config import ServiceConfig
from shared.enums import JobState, ProviderType, UrlPurpose
from shared.exceptions import GenerationError, JobNotFoundError, ValidationError
from shared.utils import as_utc, config as service_config, setup_logging, utcnow

from .asset_store import AssetStore
from .batch import BatchHandle, BatchOptions, BatchOrchestrator
from .job_store import JobStore
from .monitor import MonitorPolicy, StatusMonitor
from .providers import GenerationProvider, build_providers
from .publisher import AssetPublisher, HttpResultFetcher
from .registry import MonitorRegistry
from .scheduler import Scheduler
from .submission import SubmissionCoordinator
from .urls import PresignedUrlManager

# Provider result URLs typically expire after about two days
REPUBLISH_WINDOW = timedelta(hours=48)


class GenerationService:
    """Facade used by the HTTP layer and by other services."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        providers: Mapping[ProviderType, GenerationProvider],
        storage: ObjectStorage,
        settings: ServiceConfig | None = None,
        scheduler: Scheduler | None = None,
        registry: MonitorRegistry | None = None,
        policies: Mapping[ProviderType, MonitorPolicy] | None = None,
        fetcher: HttpResultFetcher | None = None,
        progress_manager: WebSocketProgressManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = settings or service_config
        self.logger = setup_logging("generation-service")
        self.session_factory = session_factory
        self.providers = dict(providers)
        self.storage = storage
        self.scheduler = scheduler or Scheduler()
        self.clock = clock

        self.job_store = JobStore(session_factory)
        self.asset_store = AssetStore(session_factory)

        prefixes = {
            provider_type: prefix
            for provider_type in ProviderType
            if (prefix := settings.get_pipeline_value(f"generation.publish.prefixes.{provider_type.value}"))
        }
        self.publisher = AssetPublisher(
            self.job_store,
            self.asset_store,
            storage,
            self.providers,
            bucket=settings.get("storage_bucket", "slidecast-assets"),
            staging_dir=settings.get("staging_dir", "./media/staging"),
            prefixes=prefixes,
            fetcher=fetcher,
        )
        self.monitor = StatusMonitor(
            self.job_store,
            self.providers,
            self.scheduler,
            registry=registry,
            policies=policies or {pt: MonitorPolicy.from_config(pt, settings) for pt in ProviderType},
            on_completed=self.publisher.publish,
            clock=clock,
        )
        self.submission = SubmissionCoordinator(
            self.job_store,
            self.providers,
            self.monitor,
            submit_timeout=float(settings.get_pipeline_value("generation.submit_timeout", 30)),
        )
        self.urls = PresignedUrlManager(
            self.asset_store,
            storage,
            ttl=timedelta(seconds=float(settings.get_pipeline_value("generation.urls.ttl", 172800))),
            min_validity=timedelta(seconds=float(settings.get_pipeline_value("generation.urls.min_validity", 1800))),
            max_ttl=timedelta(seconds=float(settings.get_pipeline_value("generation.urls.max_ttl", 604800))),
            clock=clock,
        )
        self.batches = BatchOrchestrator(
            self.submission,
            self.job_store,
            self.scheduler,
            retention=timedelta(seconds=float(settings.get_pipeline_value("generation.batch.retention", 86400))),
            max_retained=int(settings.get_pipeline_value("generation.batch.max_retained", 100)),
            clock=clock,
        )
        self.default_max_concurrent = int(settings.get_pipeline_value("generation.batch.max_concurrent", 5))

        if progress_manager is not None:
            self.job_store.add_listener(JobProgressNotifier(progress_manager, self.scheduler))

    @classmethod
    def from_config(
        cls,
        settings: ServiceConfig | None = None,
        session_factory: Callable[[], Session] | None = None,
        **kwargs: Any,
    ) -> "GenerationService":
        settings = settings or service_config
        if session_factory is None:
            from database import SessionLocal  # lazy import

            session_factory = SessionLocal
        return cls(
            session_factory=session_factory,
            providers=build_providers(settings),
            storage=build_storage(settings),
            settings=settings,
            **kwargs,
        )

    # Jobs

    async def submit(self, subject_ref: str, provider_type: ProviderType | str, request_payload: dict[str, Any]) -> str:
        return await self.submission.submit(subject_ref, provider_type, request_payload)

    def get_job(self, job_id: str) -> GenerationJob:
        return self.job_store.require(job_id)

    async def cancel(self, job_id: str) -> GenerationJob:
        return await self.submission.cancel(job_id)

    async def publish(self, job_id: str) -> str:
        return await self.publisher.publish(job_id)

    # Batches

    async def run_batch(
        self,
        subject_refs: Iterable[str],
        provider_type: ProviderType | str,
        options: BatchOptions | None = None,
    ) -> BatchHandle:
        options = options or BatchOptions(max_concurrent=self.default_max_concurrent)
        return await self.batches.run_batch(subject_refs, provider_type, options)

    def get_batch(self, batch_id: str) -> BatchHandle | None:
        return self.batches.get_batch(batch_id)

    # URLs

    async def get_url(
        self,
        asset_id: str,
        purpose: UrlPurpose = UrlPurpose.DOWNLOAD,
        min_validity: timedelta | None = None,
    ) -> str:
        return await self.urls.get_url(asset_id, purpose, min_validity)

    async def ensure_urls(
        self,
        asset_ids: Iterable[str],
        purpose: UrlPurpose = UrlPurpose.DOWNLOAD,
        min_validity: timedelta | None = None,
    ) -> tuple[list[str], dict[str, str]]:
        return await self.urls.ensure_urls(asset_ids, purpose, min_validity)

    # Webhooks

    async def handle_webhook(self, provider_type: ProviderType | str, payload: dict[str, Any]) -> WebhookEvent:
        """Record a provider push notification and apply it like a poll result."""
        provider = self.submission.resolve_provider(provider_type)
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be an object")

        event = self._record_webhook(provider.provider_type, payload)
        job_id: str | None = None
        try:
            handle, status = provider.parse_webhook(payload)
            job = self.job_store.find_by_handle(provider.provider_type, handle)
            if job is None:
                raise JobNotFoundError(handle)
            job_id = job.id
            if status.state is JobState.COMPLETED and not status.result_ref:
                status = await provider.get_status(handle)
            await self.monitor.apply_status(job.id, status)
        except GenerationError as exc:
            self.logger.warning(f"Webhook {event.id} from {provider.name} not applied: {exc}")
            return self._finish_webhook(event.id, job_id, error_message=str(exc))
        return self._finish_webhook(event.id, job_id)

    def _record_webhook(self, provider_type: ProviderType, payload: dict[str, Any]) -> WebhookEvent:
        with self.session_factory() as session:
            event = WebhookEvent(
                provider=provider_type.value,
                event_type=payload.get("event_type") or payload.get("type"),
                payload=payload,
            )
            session.add(event)
            session.commit()
            session.refresh(event)
            session.expunge(event)
            return event

    def _finish_webhook(self, event_id: str, job_id: str | None, error_message: str | None = None) -> WebhookEvent:
        with self.session_factory() as session:
            event = session.get(WebhookEvent, event_id)
            event.job_id = job_id
            if error_message is None:
                event.processed = True
                event.processed_at = utcnow()
                event.error_message = None
            else:
                event.error_message = error_message
                event.retry_count = (event.retry_count or 0) + 1
            session.commit()
            session.refresh(event)
            session.expunge(event)
            return event

    # Lifecycle

    def resume(self) -> int:
        """Restart monitoring after a restart and publish completed jobs that never were."""
        resumed = self.monitor.resume_active()
        cutoff = self.clock() - REPUBLISH_WINDOW
        for job in self.job_store.list_by_states([JobState.COMPLETED]):
            completed_at = as_utc(job.completed_at)
            if job.asset_id is None and job.result_ref and completed_at and completed_at >= cutoff:
                self.scheduler.spawn(self.monitor.publish_result(job.id), name=f"publish-{job.id}")
        return resumed

    async def shutdown(self) -> None:
        self.monitor.shutdown()
        await self.scheduler.shutdown()
