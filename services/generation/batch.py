"""Fan out submissions over many subjects with bounded concurrency."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from shared.enums import JobState, ProviderType, SubjectOutcome
from shared.exceptions import GenerationError, ValidationError
from shared.utils import setup_logging, utcnow

from .job_store import JobStore
from .scheduler import Scheduler
from .submission import SubmissionCoordinator

RequestBuilder = Callable[[str], dict[str, Any] | None]


@dataclass
class BatchOptions:
    """How a batch is run.

    ``max_concurrent`` bounds only the submission phase; monitoring of submitted
    jobs is not limited. ``skip_existing`` skips subjects that already have a
    published result, or a job still being generated, for the same provider.
    """

    max_concurrent: int = 5
    skip_existing: bool = False
    payloads: Mapping[str, dict[str, Any]] | None = None
    request_builder: RequestBuilder | None = None
    default_payload: dict[str, Any] | None = None


@dataclass
class SubjectResult:
    subject_ref: str
    outcome: SubjectOutcome = SubjectOutcome.QUEUED
    job_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_ref": self.subject_ref,
            "outcome": self.outcome.value,
            "job_id": self.job_id,
            "error": self.error,
        }


@dataclass
class BatchHandle:
    """Live view of a running batch."""

    batch_id: str
    provider_type: ProviderType
    results: dict[str, SubjectResult]
    max_concurrent: int
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    in_flight: int = 0
    max_in_flight: int = 0
    task: asyncio.Task | None = field(default=None, repr=False)

    def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def _leave(self) -> None:
        self.in_flight -= 1

    def counts(self) -> dict[str, int]:
        outcomes = [result.outcome for result in self.results.values()]
        return {
            "total": len(outcomes),
            "succeeded": outcomes.count(SubjectOutcome.SUBMITTED),
            "failed": outcomes.count(SubjectOutcome.FAILED),
            "skipped": outcomes.count(SubjectOutcome.SKIPPED),
            "in_progress": outcomes.count(SubjectOutcome.QUEUED) + outcomes.count(SubjectOutcome.SUBMITTING),
        }

    @property
    def done(self) -> bool:
        return self.completed_at is not None

    async def wait(self) -> "BatchHandle":
        if self.task is not None:
            await asyncio.shield(self.task)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "provider_type": self.provider_type.value,
            "max_concurrent": self.max_concurrent,
            "done": self.done,
            "counts": self.counts(),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "subjects": [result.to_dict() for result in self.results.values()],
        }


class BatchOrchestrator:
    """Runs submission for many subjects; one subject's failure never aborts the batch."""

    def __init__(
        self,
        submission: SubmissionCoordinator,
        job_store: JobStore,
        scheduler: Scheduler,
        retention: timedelta = timedelta(hours=24),
        max_retained: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.submission = submission
        self.job_store = job_store
        self.scheduler = scheduler
        self.retention = retention
        self.max_retained = max_retained
        self.clock = clock
        self.logger = setup_logging("batch-orchestrator")
        self._batches: dict[str, BatchHandle] = {}

    async def run_batch(
        self,
        subject_refs: Iterable[str],
        provider_type: ProviderType | str,
        options: BatchOptions | None = None,
    ) -> BatchHandle:
        """Start a batch in the background and return its handle immediately."""
        options = options or BatchOptions()
        if options.max_concurrent < 1:
            raise ValidationError("max_concurrent must be at least 1")
        provider = self.submission.resolve_provider(provider_type)

        subjects = [ref for ref in dict.fromkeys(subject_refs) if ref]
        if not subjects:
            raise ValidationError("A batch needs at least one subject")

        handle = BatchHandle(
            batch_id=uuid.uuid4().hex,
            provider_type=provider.provider_type,
            results={ref: SubjectResult(subject_ref=ref) for ref in subjects},
            max_concurrent=options.max_concurrent,
        )
        self.prune()
        self._batches[handle.batch_id] = handle
        handle.task = self.scheduler.spawn(self._run(handle, options), name=f"batch-{handle.batch_id}")
        self.logger.info(
            f"Started batch {handle.batch_id}: {len(subjects)} subject(s) on {provider.name}, "
            f"max {options.max_concurrent} concurrent"
        )
        return handle

    def get_batch(self, batch_id: str) -> BatchHandle | None:
        self.prune()
        return self._batches.get(batch_id)

    def prune(self) -> int:
        """Forget finished batches past the retention window or beyond the retained count."""
        cutoff = self.clock() - self.retention
        finished = sorted((h for h in self._batches.values() if h.done), key=lambda h: h.completed_at)
        excess = len(finished) - self.max_retained
        dropped = 0
        for index, handle in enumerate(finished):
            if index < excess or handle.completed_at < cutoff:
                del self._batches[handle.batch_id]
                dropped += 1
        return dropped

    def __len__(self) -> int:
        return len(self._batches)

    async def _run(self, handle: BatchHandle, options: BatchOptions) -> None:
        semaphore = asyncio.Semaphore(options.max_concurrent)
        try:
            await asyncio.gather(
                *(self._process(handle, result, semaphore, options) for result in handle.results.values())
            )
        finally:
            handle.completed_at = self.clock()
        counts = handle.counts()
        self.logger.info(
            f"Batch {handle.batch_id} finished: {counts['succeeded']} succeeded, "
            f"{counts['failed']} failed, {counts['skipped']} skipped"
        )

    def _existing_job_id(self, subject_ref: str, provider_type: ProviderType) -> str | None:
        published = self.job_store.find_published(subject_ref, provider_type)
        if published is not None:
            return published.id
        for job in reversed(self.job_store.list_for_subject(subject_ref, provider_type)):
            if JobState(job.state) in (JobState.PENDING, JobState.PROCESSING):
                return job.id
        return None

    @staticmethod
    def _payload_for(subject_ref: str, options: BatchOptions) -> dict[str, Any] | None:
        if options.payloads and subject_ref in options.payloads:
            return dict(options.payloads[subject_ref])
        if options.request_builder is not None:
            return options.request_builder(subject_ref)
        if options.default_payload is not None:
            return dict(options.default_payload)
        return None

    async def _process(
        self,
        handle: BatchHandle,
        result: SubjectResult,
        semaphore: asyncio.Semaphore,
        options: BatchOptions,
    ) -> None:
        subject_ref = result.subject_ref
        try:
            if options.skip_existing:
                existing = self._existing_job_id(subject_ref, handle.provider_type)
                if existing is not None:
                    result.outcome = SubjectOutcome.SKIPPED
                    result.job_id = existing
                    self.logger.info(f"Batch {handle.batch_id}: skipping {subject_ref} (job {existing})")
                    return

            payload = self._payload_for(subject_ref, options)
            if not payload:
                raise ValidationError(f"No request payload for subject {subject_ref}")

            async with semaphore:
                result.outcome = SubjectOutcome.SUBMITTING
                handle._enter()
                try:
                    result.job_id = await self.submission.submit(subject_ref, handle.provider_type, payload)
                finally:
                    handle._leave()
            result.outcome = SubjectOutcome.SUBMITTED
        except GenerationError as exc:
            result.outcome = SubjectOutcome.FAILED
            result.error = str(exc)
            self.logger.warning(f"Batch {handle.batch_id}: {subject_ref} failed: {exc}")
        except Exception as exc:  # noqa: BLE001
            result.outcome = SubjectOutcome.FAILED
            result.error = str(exc) or type(exc).__name__
            self.logger.exception(f"Batch {handle.batch_id}: unexpected error for {subject_ref}")
