"""
Enums and constants used across the generation pipeline.
"""

from enum import Enum


class JobState(str, Enum):
    """Lifecycle states of a generation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class ProviderType(str, Enum):
    """External generation providers."""

    HEYGEN = "heygen"  # avatar video
    VEO = "veo"  # intro / scene video
    SHOTSTACK = "shotstack"  # final composed render
    STUB = "stub"


class UploadState(str, Enum):
    """Upload lifecycle of a durable asset."""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class UrlPurpose(str, Enum):
    """What a presigned URL grants."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


class SubjectOutcome(str, Enum):
    """Per-subject result inside a batch."""

    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"
    SKIPPED = "skipped"
