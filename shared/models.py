from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from shared.enums import JobState, ProviderType, UploadState, UrlPurpose


class ProviderStatus(BaseModel):
    """Provider-reported job status mapped onto the job lifecycle"""

    state: JobState
    result_ref: str | None = None
    progress_percent: int | None = Field(default=None, ge=0, le=100)
    error_message: str | None = None
    duration_seconds: float | None = None
    raw_status: str | None = Field(default=None, description="Provider's native status value")


# Request/Response Models
class SubmitJobRequest(BaseModel):
    subject_ref: str = Field(..., min_length=1, description="Opaque reference to the slide or presentation")
    provider_type: ProviderType
    request_payload: dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    subject_ref: str
    provider_type: ProviderType
    provider_job_handle: str | None = None
    state: JobState
    result_ref: str | None = None
    error_message: str | None = None
    progress_percent: int | None = None
    asset_id: str | None = None
    poll_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    bucket: str
    key: str
    subject_ref: str | None = None
    size_bytes: int | None = None
    content_type: str | None = None
    checksum: str | None = None
    upload_state: UploadState
    error_message: str | None = None


class BatchRequest(BaseModel):
    subject_refs: list[str] = Field(..., min_length=1)
    provider_type: ProviderType
    max_concurrent: int = Field(default=5, ge=1, le=50)
    skip_existing: bool = False
    payloads: dict[str, dict[str, Any]] | None = Field(
        default=None, description="Per-subject request payloads"
    )
    default_payload: dict[str, Any] | None = Field(
        default=None, description="Payload used for subjects without an entry in payloads"
    )


class AssetUrlResponse(BaseModel):
    asset_id: str
    purpose: UrlPurpose
    url: str
    expires_at: datetime | None = None


class UrlRefreshRequest(BaseModel):
    asset_ids: list[str] = Field(..., min_length=1)
    purpose: UrlPurpose = UrlPurpose.DOWNLOAD
    min_validity_seconds: int | None = Field(default=None, ge=0)


class UrlRefreshResponse(BaseModel):
    regenerated: list[str]
    urls: dict[str, str]


class APIResponse(BaseModel):
    """Generic API response wrapper"""

    success: bool = True
    message: str = "Success"
    data: Any | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)
