"""Filesystem object storage issuing S3-style signed URLs."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import shutil
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

from shared.enums import UrlPurpose
from shared.utils import ensure_directory, utcnow

from .base import ObjectStorage

AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


class LocalObjectStorage(ObjectStorage):
    """Store objects under ``root/<bucket>/<key>`` for development and tests."""

    def __init__(
        self,
        root: str | Path,
        public_base_url: str = "http://localhost:8000/media",
        signing_secret: str = "local-development-secret",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret.encode("utf-8")
        self.clock = clock
        self.presign_calls = 0

    def path_for(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Object key escapes storage root: {key}")
        return path

    async def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        path = self.path_for(bucket, key)
        ensure_directory(str(path.parent))
        await asyncio.to_thread(path.write_bytes, data)

    async def put_file(self, bucket: str, key: str, path: str | Path, content_type: str) -> None:
        target = self.path_for(bucket, key)
        ensure_directory(str(target.parent))
        await asyncio.to_thread(shutil.copyfile, path, target)

    async def head_object(self, bucket: str, key: str) -> bool:
        return self.path_for(bucket, key).is_file()

    async def delete_object(self, bucket: str, key: str) -> None:
        path = self.path_for(bucket, key)
        if path.exists():
            path.unlink()

    def _signature(self, method: str, bucket: str, key: str, amz_date: str, expires: int) -> str:
        message = f"{method}\n{bucket}/{key}\n{amz_date}\n{expires}".encode("utf-8")
        return hmac.new(self.signing_secret, message, hashlib.sha256).hexdigest()

    async def presign(self, bucket: str, key: str, purpose: UrlPurpose, ttl: timedelta) -> str:
        self.presign_calls += 1
        method = "PUT" if purpose is UrlPurpose.UPLOAD else "GET"
        amz_date = self.clock().strftime(AMZ_DATE_FORMAT)
        expires = int(ttl.total_seconds())
        query = urlencode(
            {
                "X-Amz-Algorithm": "HMAC-SHA256",
                "X-Amz-Date": amz_date,
                "X-Amz-Expires": expires,
                "X-Amz-Method": method,
                "X-Amz-Signature": self._signature(method, bucket, key, amz_date, expires),
            }
        )
        return f"{self.public_base_url}/{quote(bucket)}/{quote(key)}?{query}"

    def verify_url(self, url: str, method: str = "GET") -> bool:
        """Check signature and expiry of a URL issued by this storage."""
        parsed = urlparse(url)
        params = {name: values[0] for name, values in parse_qs(parsed.query).items()}
        try:
            amz_date = params["X-Amz-Date"]
            expires = int(params["X-Amz-Expires"])
            signature = params["X-Amz-Signature"]
        except (KeyError, ValueError):
            return False

        prefix = urlparse(self.public_base_url).path.rstrip("/") + "/"
        if not parsed.path.startswith(prefix):
            return False
        bucket, _, key = parsed.path[len(prefix):].partition("/")
        expected = self._signature(method, unquote(bucket), unquote(key), amz_date, expires)
        if not hmac.compare_digest(expected, signature):
            return False

        issued = datetime.strptime(amz_date, AMZ_DATE_FORMAT).replace(tzinfo=UTC)
        return self.clock() < issued + timedelta(seconds=expires)
