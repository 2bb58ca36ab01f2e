"""
Database models package - SQLAlchemy ORM models
"""

from .asset import Asset
from .generation_job import GenerationJob
from .presigned_url import PresignedUrlGrant
from .webhook_event import WebhookEvent

__all__ = [
    "Asset",
    "GenerationJob",
    "PresignedUrlGrant",
    "WebhookEvent",
]
