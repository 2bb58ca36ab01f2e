"""
Generation job model - one request to an external generation provider
"""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from database import Base
from shared.enums import JobState
from shared.utils import utcnow


def generate_id() -> str:
    return uuid.uuid4().hex


class GenerationJob(Base):
    """Lifecycle record of a long-running provider job"""

    __tablename__ = "generation_jobs"

    id = Column(String(32), primary_key=True, default=generate_id)
    subject_ref = Column(String(255), nullable=False, index=True)
    provider_type = Column(String(50), nullable=False)
    provider_job_handle = Column(String(255), nullable=True)  # set exactly once
    state = Column(String(20), nullable=False, default=JobState.PENDING.value)
    request_payload = Column(JSON, nullable=False, default=dict)
    result_ref = Column(Text, nullable=True)  # ephemeral provider URL
    error_message = Column(Text, nullable=True)
    progress_percent = Column(Integer, nullable=True)
    asset_id = Column(String(32), ForeignKey("assets.id"), nullable=True, unique=True)

    # Monitoring bookkeeping
    poll_count = Column(Integer, nullable=False, default=0)
    last_polled_at = Column(DateTime(timezone=True), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_generation_jobs_state", "state"),
        Index("ix_generation_jobs_subject_provider", "subject_ref", "provider_type"),
        Index("ix_generation_jobs_provider_handle", "provider_type", "provider_job_handle"),
    )

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.job_state.is_terminal

    def __repr__(self) -> str:
        return f"<GenerationJob {self.id} {self.provider_type} {self.state}>"
