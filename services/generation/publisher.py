"""Move completed provider results into durable storage."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from models.database import GenerationJob
from services.storage import ObjectStorage
from shared.enums import JobState, ProviderType, UploadState
from shared.exceptions import PublishError
from shared.http_client import AsyncHTTPClient
from shared.utils import ensure_directory, file_digest, remove_quietly, sanitize_filename, setup_logging

from .asset_store import AssetStore
from .job_store import JobStore
from .locks import KeyedLocks
from .providers import GenerationProvider

DEFAULT_PREFIXES = {
    ProviderType.HEYGEN: "slide_avatar_video",
    ProviderType.VEO: "presentation_intro_video",
    ProviderType.SHOTSTACK: "final_render_video",
    ProviderType.STUB: "generated",
}


class HttpResultFetcher:
    """Stream provider results to local files."""

    def __init__(self, timeout: int = 300) -> None:
        self.timeout = timeout

    async def fetch(self, url: str, destination: Path, headers: dict[str, Any] | None = None) -> int:
        async with AsyncHTTPClient(timeout=self.timeout) as client:
            return await client.download(url, destination, headers=headers)


class AssetPublisher:
    """Download a completed job's result, upload it and record the Asset.

    Publishing is idempotent per job: the object key is derived from the
    subject and job id, the asset row is created only if absent, and a job that
    already links an uploaded asset is returned without any I/O.
    """

    def __init__(
        self,
        job_store: JobStore,
        asset_store: AssetStore,
        storage: ObjectStorage,
        providers: Mapping[ProviderType, GenerationProvider],
        bucket: str,
        staging_dir: str | Path,
        prefixes: Mapping[ProviderType, str] | None = None,
        fetcher: HttpResultFetcher | None = None,
    ) -> None:
        self.job_store = job_store
        self.asset_store = asset_store
        self.storage = storage
        self.providers = providers
        self.bucket = bucket
        self.staging_dir = Path(staging_dir)
        self.prefixes = {**DEFAULT_PREFIXES, **dict(prefixes or {})}
        self.fetcher = fetcher or HttpResultFetcher()
        self.logger = setup_logging("asset-publisher")
        self._locks = KeyedLocks()

    def object_key(self, job: GenerationJob, extension: str) -> str:
        provider_type = ProviderType(job.provider_type)
        prefix = self.prefixes.get(provider_type, provider_type.value)
        return f"{prefix}/{sanitize_filename(job.subject_ref)}/{job.id}{extension}"

    async def publish(self, job_id: str) -> str:
        """Publish a completed job and return its asset id."""
        async with self._locks.hold(job_id):
            return await self._publish(job_id)

    async def _publish(self, job_id: str) -> str:
        job = self.job_store.require(job_id)

        if job.asset_id:
            linked = self.asset_store.get(job.asset_id)
            if linked is not None and linked.upload_state == UploadState.COMPLETED.value:
                self.logger.debug(f"Job {job_id} already published as {job.asset_id}")
                return job.asset_id

        if JobState(job.state) is not JobState.COMPLETED:
            raise PublishError(f"Job {job_id} is {job.state}; only completed jobs can be published", job_id=job_id)
        if not job.result_ref:
            raise PublishError(f"Job {job_id} has no result to publish", job_id=job_id)

        provider = self.providers.get(ProviderType(job.provider_type))
        content_type = provider.content_type if provider else "application/octet-stream"
        extension = provider.file_extension if provider else ".bin"
        key = self.object_key(job, extension)

        asset, created = self.asset_store.get_or_create(
            self.bucket, key, subject_ref=job.subject_ref, content_type=content_type
        )
        if not created:
            self.logger.info(f"Reusing asset {asset.id} for job {job_id} (state {asset.upload_state})")
            if asset.upload_state == UploadState.COMPLETED.value and await self.storage.head_object(self.bucket, key):
                self.job_store.link_asset(job_id, asset.id)
                return asset.id

        self.asset_store.mark_uploading(asset.id)
        ensure_directory(str(self.staging_dir))
        staging_path = self.staging_dir / f"{job_id}-{uuid.uuid4().hex}{extension}"
        try:
            download_url = provider.prepare_download_url(job.result_ref) if provider else job.result_ref
            await self.fetcher.fetch(download_url, staging_path)
            size_bytes, checksum = await asyncio.to_thread(file_digest, staging_path)
            if size_bytes == 0:
                raise PublishError(f"Downloaded result for job {job_id} is empty", job_id=job_id)

            await self.storage.put_file(self.bucket, key, staging_path, content_type)
            if not await self.storage.head_object(self.bucket, key):
                raise PublishError(f"Uploaded object {self.bucket}/{key} could not be verified", job_id=job_id)
        except PublishError as exc:
            self.asset_store.mark_failed(asset.id, str(exc))
            self.logger.error(f"Publishing job {job_id} failed: {exc}")
            raise
        except Exception as exc:  # noqa: BLE001
            message = f"Failed to publish job {job_id}: {exc}"
            self.asset_store.mark_failed(asset.id, message)
            self.logger.error(message)
            raise PublishError(message, job_id=job_id) from exc
        finally:
            remove_quietly(staging_path)

        self.asset_store.mark_completed(asset.id, size_bytes=size_bytes, checksum=checksum, content_type=content_type)
        self.job_store.link_asset(job_id, asset.id)
        self.logger.info(f"Published job {job_id} as asset {asset.id} ({size_bytes} bytes) at {self.bucket}/{key}")
        return asset.id
