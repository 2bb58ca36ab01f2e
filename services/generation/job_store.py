"""Durable generation job records and their lifecycle transitions."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.database import Asset, GenerationJob
from shared.enums import JobState, ProviderType, UploadState
from shared.exceptions import InvalidStateTransition, JobNotFoundError
from shared.utils import setup_logging, utcnow

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.PROCESSING}),
    JobState.PROCESSING: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}
TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

TransitionListener = Callable[[GenerationJob, JobState | None], None]


def can_transition(current: JobState, target: JobState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class JobStore:
    """Read-modify-write access to generation jobs, one job id per operation.

    Every method opens its own session and returns detached, fully loaded rows,
    so callers never share a session across awaits.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory
        self.logger = setup_logging("generation-job-store")
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        """Call `listener(job, previous_state)` after every committed state change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, job: GenerationJob, previous: JobState | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(job, previous)
            except Exception:  # noqa: BLE001
                self.logger.exception(f"Job transition listener failed for {job.id}")

    @staticmethod
    def _detach(session: Session, job: GenerationJob) -> GenerationJob:
        session.refresh(job)
        session.expunge(job)
        return job

    @staticmethod
    def _load_for_update(session: Session, job_id: str) -> GenerationJob:
        job = session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id).with_for_update()
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def create(
        self,
        subject_ref: str,
        provider_type: ProviderType,
        request_payload: dict[str, Any],
    ) -> GenerationJob:
        """Insert a new job in PENDING."""
        with self.session_factory() as session:
            job = GenerationJob(
                subject_ref=subject_ref,
                provider_type=ProviderType(provider_type).value,
                state=JobState.PENDING.value,
                request_payload=dict(request_payload),
            )
            session.add(job)
            session.commit()
            job = self._detach(session, job)
        self.logger.info(f"Created job {job.id} for {subject_ref} ({job.provider_type})")
        self._notify(job, None)
        return job

    def mark_submitted(self, job_id: str, provider_job_handle: str) -> GenerationJob:
        """Move PENDING -> PROCESSING and record the provider handle (once)."""
        with self.session_factory() as session:
            job = self._load_for_update(session, job_id)
            previous = JobState(job.state)
            if not can_transition(previous, JobState.PROCESSING):
                raise InvalidStateTransition(job_id, previous, JobState.PROCESSING)
            if job.provider_job_handle is not None:
                raise InvalidStateTransition(job_id, previous, JobState.PROCESSING)
            now = utcnow()
            job.provider_job_handle = provider_job_handle
            job.state = JobState.PROCESSING.value
            job.started_at = now
            job.updated_at = now
            session.commit()
            job = self._detach(session, job)
        self._notify(job, previous)
        return job

    def transition(
        self,
        job_id: str,
        new_state: JobState,
        result_ref: str | None = None,
        error_message: str | None = None,
        progress_percent: int | None = None,
    ) -> GenerationJob:
        """Apply a forward transition; raises InvalidStateTransition otherwise."""
        new_state = JobState(new_state)
        with self.session_factory() as session:
            job = self._load_for_update(session, job_id)
            previous = JobState(job.state)
            if not can_transition(previous, new_state):
                raise InvalidStateTransition(job_id, previous, new_state)

            now = utcnow()
            job.state = new_state.value
            job.updated_at = now
            if result_ref is not None:
                job.result_ref = result_ref
            if error_message is not None:
                job.error_message = error_message
            if progress_percent is not None:
                job.progress_percent = progress_percent
            elif new_state is JobState.COMPLETED:
                job.progress_percent = 100
            if new_state in TERMINAL_STATES:
                job.completed_at = now
            session.commit()
            job = self._detach(session, job)

        self.logger.info(f"Job {job_id}: {previous.value} -> {new_state.value}")
        self._notify(job, previous)
        return job

    def record_poll(self, job_id: str, progress_percent: int | None = None) -> GenerationJob:
        """Monitoring bookkeeping; allowed in any state, never changes state."""
        with self.session_factory() as session:
            job = self._load_for_update(session, job_id)
            job.poll_count = (job.poll_count or 0) + 1
            job.last_polled_at = utcnow()
            if progress_percent is not None and JobState(job.state) not in TERMINAL_STATES:
                job.progress_percent = progress_percent
            session.commit()
            return self._detach(session, job)

    def link_asset(self, job_id: str, asset_id: str) -> GenerationJob:
        """Record the published asset of a completed job, only if none is linked."""
        with self.session_factory() as session:
            job = self._load_for_update(session, job_id)
            if JobState(job.state) is not JobState.COMPLETED:
                raise InvalidStateTransition(job_id, job.state, "published")
            if job.asset_id is None:
                job.asset_id = asset_id
                job.updated_at = utcnow()
                session.commit()
            elif job.asset_id != asset_id:
                self.logger.warning(
                    f"Job {job_id} already linked to asset {job.asset_id}; ignoring {asset_id}"
                )
            return self._detach(session, job)

    def get(self, job_id: str) -> GenerationJob | None:
        with self.session_factory() as session:
            job = session.get(GenerationJob, job_id)
            if job is None:
                return None
            session.expunge(job)
            return job

    def require(self, job_id: str) -> GenerationJob:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_by_states(self, states: Iterable[JobState]) -> list[GenerationJob]:
        values = [JobState(state).value for state in states]
        with self.session_factory() as session:
            jobs = list(
                session.execute(
                    select(GenerationJob)
                    .where(GenerationJob.state.in_(values))
                    .order_by(GenerationJob.created_at)
                ).scalars()
            )
            session.expunge_all()
            return jobs

    def list_for_subject(
        self, subject_ref: str, provider_type: ProviderType | None = None
    ) -> list[GenerationJob]:
        query = select(GenerationJob).where(GenerationJob.subject_ref == subject_ref)
        if provider_type is not None:
            query = query.where(GenerationJob.provider_type == ProviderType(provider_type).value)
        with self.session_factory() as session:
            jobs = list(session.execute(query.order_by(GenerationJob.created_at)).scalars())
            session.expunge_all()
            return jobs

    def find_published(self, subject_ref: str, provider_type: ProviderType) -> GenerationJob | None:
        """Latest completed job for the subject whose asset finished uploading."""
        query = (
            select(GenerationJob)
            .join(Asset, Asset.id == GenerationJob.asset_id)
            .where(
                GenerationJob.subject_ref == subject_ref,
                GenerationJob.provider_type == ProviderType(provider_type).value,
                GenerationJob.state == JobState.COMPLETED.value,
                Asset.upload_state == UploadState.COMPLETED.value,
            )
            .order_by(GenerationJob.completed_at.desc())
            .limit(1)
        )
        with self.session_factory() as session:
            job = session.execute(query).scalar_one_or_none()
            if job is not None:
                session.expunge(job)
            return job

    def find_by_handle(self, provider_type: ProviderType, handle: str) -> GenerationJob | None:
        query = select(GenerationJob).where(
            GenerationJob.provider_type == ProviderType(provider_type).value,
            GenerationJob.provider_job_handle == handle,
        )
        with self.session_factory() as session:
            job = session.execute(query).scalars().first()
            if job is not None:
                session.expunge(job)
            return job
