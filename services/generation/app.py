"""Generation service API endpoints: jobs, batches, asset URLs and provider webhooks."""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from database import init_database
from services.generation.batch import BatchOptions
from services.generation.service import GenerationService
from services.websocket_progress import websocket_manager
from shared.enums import ProviderType, UrlPurpose
from shared.exceptions import (
    AssetNotFoundError,
    GenerationError,
    InvalidStateTransition,
    JobNotFoundError,
    PublishError,
    TerminalProviderError,
    TransientProviderError,
    ValidationError,
)
from shared.models import (
    APIResponse,
    AssetResponse,
    AssetUrlResponse,
    BatchRequest,
    JobResponse,
    SubmitJobRequest,
    UrlRefreshRequest,
    UrlRefreshResponse,
)
from shared.utils import config, setup_logging

logger = setup_logging("generation-service-api")

# Initialize service
service = GenerationService.from_config(progress_manager=websocket_manager)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Create tables, resume monitors for in-flight jobs, and stop timers on shutdown."""
    init_database()
    resumed = service.resume()
    logger.info(f"Generation service started; resumed monitoring for {resumed} job(s)")
    try:
        yield
    finally:
        await service.shutdown()
        logger.info("Generation service stopped")


app = FastAPI(
    title="Generation Service",
    description="Submit, monitor and publish long-running provider generation jobs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get("allowed_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS: list[tuple[type[GenerationError], int]] = [
    (ValidationError, 400),
    (JobNotFoundError, 404),
    (AssetNotFoundError, 404),
    (InvalidStateTransition, 409),
    (TransientProviderError, 503),
    (TerminalProviderError, 502),
    (PublishError, 502),
]


def get_service() -> GenerationService:
    """Dependency returning the shared generation service."""
    return service


def to_http_exception(exc: GenerationError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/health")
async def health_check(generation: GenerationService = Depends(get_service)):
    """Health check endpoint for the generation service."""
    return APIResponse(
        message="Generation Service is healthy",
        data={
            "providers": sorted(provider.value for provider in generation.providers),
            "active_monitors": generation.monitor.active_count(),
        },
    )


@app.post("/jobs", response_model=dict, status_code=202)
async def submit_job(
    request: SubmitJobRequest, generation: GenerationService = Depends(get_service)
) -> dict:
    """Start a generation job; completion is reported through status queries or /ws/progress."""
    try:
        job_id = await generation.submit(request.subject_ref, request.provider_type, request.request_payload)
    except GenerationError as exc:
        logger.warning(f"Submission for {request.subject_ref} rejected: {exc}")
        raise to_http_exception(exc) from exc

    job = generation.get_job(job_id)
    return {
        "job_id": job_id,
        "state": job.state,
        "message": "Generation started. Use the job ID to track progress.",
    }


@app.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    subject_ref: str = Query(..., min_length=1),
    provider_type: ProviderType | None = None,
    generation: GenerationService = Depends(get_service),
) -> list[JobResponse]:
    """List jobs generated for a subject."""
    jobs = generation.job_store.list_for_subject(subject_ref, provider_type)
    return [JobResponse.model_validate(job) for job in jobs]


@app.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, generation: GenerationService = Depends(get_service)) -> JobResponse:
    """Get the current state of a job."""
    try:
        return JobResponse.model_validate(generation.get_job(job_id))
    except GenerationError as exc:
        raise to_http_exception(exc) from exc


@app.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, generation: GenerationService = Depends(get_service)) -> JobResponse:
    """Cancel a job that is still processing."""
    try:
        return JobResponse.model_validate(await generation.cancel(job_id))
    except GenerationError as exc:
        raise to_http_exception(exc) from exc


@app.post("/jobs/{job_id}/publish", response_model=dict)
async def publish_job(job_id: str, generation: GenerationService = Depends(get_service)) -> dict:
    """Publish (or re-publish after a failure) a completed job's result."""
    try:
        asset_id = await generation.publish(job_id)
    except GenerationError as exc:
        raise to_http_exception(exc) from exc
    return {"job_id": job_id, "asset_id": asset_id}


@app.post("/batches", response_model=dict, status_code=202)
async def start_batch(request: BatchRequest, generation: GenerationService = Depends(get_service)) -> dict:
    """Submit jobs for many subjects with bounded concurrency."""
    options = BatchOptions(
        max_concurrent=request.max_concurrent,
        skip_existing=request.skip_existing,
        payloads=request.payloads,
        default_payload=request.default_payload,
    )
    try:
        handle = await generation.run_batch(request.subject_refs, request.provider_type, options)
    except GenerationError as exc:
        raise to_http_exception(exc) from exc
    return handle.to_dict()


@app.get("/batches/{batch_id}", response_model=dict)
async def get_batch(batch_id: str, generation: GenerationService = Depends(get_service)) -> dict:
    """Progress of a batch."""
    handle = generation.get_batch(batch_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return handle.to_dict()


@app.get("/assets/{asset_id}", response_model=AssetResponse)
async def get_asset(asset_id: str, generation: GenerationService = Depends(get_service)) -> AssetResponse:
    try:
        return AssetResponse.model_validate(generation.asset_store.require(asset_id))
    except GenerationError as exc:
        raise to_http_exception(exc) from exc


@app.get("/assets/{asset_id}/url", response_model=AssetUrlResponse)
async def get_asset_url(
    asset_id: str,
    purpose: UrlPurpose = UrlPurpose.DOWNLOAD,
    min_validity_seconds: int | None = Query(default=None, ge=0),
    generation: GenerationService = Depends(get_service),
) -> AssetUrlResponse:
    """Presigned URL for an asset, regenerated only when close to expiry."""
    min_validity = timedelta(seconds=min_validity_seconds) if min_validity_seconds is not None else None
    try:
        grant = await generation.urls.get_grant(asset_id, purpose, min_validity)
    except GenerationError as exc:
        raise to_http_exception(exc) from exc
    return AssetUrlResponse(asset_id=asset_id, purpose=purpose, url=grant.url, expires_at=grant.expires_at)


@app.post("/assets/urls/refresh", response_model=UrlRefreshResponse)
async def refresh_asset_urls(
    request: UrlRefreshRequest, generation: GenerationService = Depends(get_service)
) -> UrlRefreshResponse:
    """Make sure every listed asset has a URL valid for the requested time."""
    min_validity = (
        timedelta(seconds=request.min_validity_seconds) if request.min_validity_seconds is not None else None
    )
    try:
        regenerated, urls = await generation.ensure_urls(request.asset_ids, request.purpose, min_validity)
    except GenerationError as exc:
        raise to_http_exception(exc) from exc
    return UrlRefreshResponse(regenerated=regenerated, urls=urls)


@app.post("/webhooks/{provider}", response_model=dict)
async def receive_webhook(
    provider: str,
    payload: dict[str, Any] = Body(...),
    generation: GenerationService = Depends(get_service),
) -> dict:
    """Provider push notifications; applied through the same path as polling."""
    try:
        event = await generation.handle_webhook(provider, payload)
    except GenerationError as exc:
        raise to_http_exception(exc) from exc
    return {
        "event_id": event.id,
        "job_id": event.job_id,
        "processed": event.processed,
        "error": event.error_message,
    }
