"""Durable object storage backends."""

from __future__ import annotations

from shared.config import ServiceConfig
from shared.utils import config as service_config

from .base import ObjectStorage
from .local import LocalObjectStorage


def build_storage(settings: ServiceConfig | None = None) -> ObjectStorage:
    """Select the storage backend configured by STORAGE_BACKEND."""
    settings = settings or service_config
    backend = str(settings.get("storage_backend", "local")).lower()
    if backend in {"s3", "r2"}:
        from .s3 import S3ObjectStorage  # lazy import

        return S3ObjectStorage(
            endpoint_url=settings.get("r2_endpoint"),
            access_key_id=settings.get("r2_access_key_id"),
            secret_access_key=settings.get("r2_secret_access_key"),
            region=settings.get("r2_region", "auto"),
        )
    if backend != "local":
        raise ValueError(f"Unknown storage backend '{backend}'")
    return LocalObjectStorage(
        root=f"{settings.get('media_root', './media')}/objects",
        public_base_url=settings.get("storage_public_base_url", "http://localhost:8000/media"),
        signing_secret=settings.get("storage_signing_secret", "local-development-secret"),
    )


__all__ = ["LocalObjectStorage", "ObjectStorage", "build_storage"]
