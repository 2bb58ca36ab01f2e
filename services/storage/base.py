"""Base class for durable object storage."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path

from shared.enums import UrlPurpose


class ObjectStorage(ABC):
    """Bucket/key addressed blob store that can mint presigned URLs."""

    @abstractmethod
    async def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        """Store bytes under bucket/key, replacing any previous object."""

    async def put_file(self, bucket: str, key: str, path: str | Path, content_type: str) -> None:
        """Store a file from disk; backends may stream instead of reading it whole."""
        data = await asyncio.to_thread(Path(path).read_bytes)
        await self.put_object(bucket, key, data, content_type)

    @abstractmethod
    async def presign(self, bucket: str, key: str, purpose: UrlPurpose, ttl: timedelta) -> str:
        """Return a URL granting `purpose` access to the object for `ttl`."""

    @abstractmethod
    async def head_object(self, bucket: str, key: str) -> bool:
        """Whether the object exists."""

    @abstractmethod
    async def delete_object(self, bucket: str, key: str) -> None:
        """Remove the object; missing objects are ignored."""
