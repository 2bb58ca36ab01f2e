"""S3-compatible object storage (Cloudflare R2)."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from shared.enums import UrlPurpose

from .base import ObjectStorage

logger = logging.getLogger(__name__)

# SigV4 presigned URLs cannot outlive seven days
MAX_PRESIGN_TTL = timedelta(days=7)
MISSING_OBJECT_CODES = {"404", "NoSuchKey", "NotFound"}


class S3ObjectStorage(ObjectStorage):
    """boto3 backed storage; blocking SDK calls run in worker threads."""

    def __init__(
        self,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        region: str = "auto",
        client=None,
    ) -> None:
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )

    async def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        await asyncio.to_thread(
            self.client.put_object, Bucket=bucket, Key=key, Body=data, ContentType=content_type
        )
        logger.info(f"Uploaded {len(data)} bytes to {bucket}/{key}")

    async def put_file(self, bucket: str, key: str, path: str | Path, content_type: str) -> None:
        await asyncio.to_thread(
            self.client.upload_file,
            str(path),
            bucket,
            key,
            ExtraArgs={"ContentType": content_type},
        )
        logger.info(f"Uploaded {path} to {bucket}/{key}")

    async def presign(self, bucket: str, key: str, purpose: UrlPurpose, ttl: timedelta) -> str:
        ttl = min(ttl, MAX_PRESIGN_TTL)
        method = "put_object" if purpose is UrlPurpose.UPLOAD else "get_object"
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            ClientMethod=method,
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=int(ttl.total_seconds()),
        )

    async def head_object(self, bucket: str, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in MISSING_OBJECT_CODES:
                return False
            raise
        return True

    async def delete_object(self, bucket: str, key: str) -> None:
        await asyncio.to_thread(self.client.delete_object, Bucket=bucket, Key=key)
