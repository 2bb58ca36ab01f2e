import hashlib
import os
from datetime import UTC, datetime
from pathlib import Path

from shared.config import ServiceConfig, config
from shared.logging_utils import setup_logging

__all__ = [
    "ServiceConfig",
    "as_utc",
    "config",
    "ensure_directory",
    "file_digest",
    "remove_quietly",
    "sanitize_filename",
    "setup_logging",
    "utcnow",
]

CHUNK_SIZE = 1024 * 64


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes loaded back from the database"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safe storage"""
    invalid_chars = '<>:"/\\|?* '
    for char in invalid_chars:
        filename = filename.replace(char, "_")
    return filename.strip("._") or "subject"


def ensure_directory(path: str) -> None:
    """Ensure directory exists, create if not"""
    Path(path).mkdir(parents=True, exist_ok=True)


def file_digest(path: str | Path) -> tuple[int, str]:
    """Return (size in bytes, sha256 hex digest) of a file on disk"""
    digest = hashlib.sha256()
    size = 0
    with open(path, "rb") as stream:
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            digest.update(chunk)
            size += len(chunk)
    return size, digest.hexdigest()


def remove_quietly(path: str | Path | None) -> bool:
    """Delete a file if it exists; returns True when something was removed"""
    if not path:
        return False
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True
