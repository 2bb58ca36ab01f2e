"""Generation provider registry."""

from __future__ import annotations

import logging

from shared.config import ServiceConfig
from shared.enums import ProviderType
from shared.utils import config as service_config

from .base import GenerationProvider, HTTPGenerationProvider, classify_http_failure
from .heygen import HeyGenProvider
from .shotstack import ShotstackProvider
from .stub import StubGenerationProvider
from .veo import VeoProvider

logger = logging.getLogger(__name__)


def build_providers(settings: ServiceConfig | None = None) -> dict[ProviderType, GenerationProvider]:
    """Instantiate every configured provider, keyed by type."""
    settings = settings or service_config
    candidates: list[GenerationProvider] = [
        HeyGenProvider(
            api_key=settings.get("heygen_api_key"),
            base_url=settings.get("heygen_base_url"),
            default_avatar_id=settings.get("heygen_default_avatar_id"),
            webhook_url=settings.get("heygen_webhook_url"),
            test_mode=settings.get("heygen_test_mode", False),
        ),
        VeoProvider(
            api_key=settings.get("veo_api_key"),
            base_url=settings.get("veo_base_url"),
            model=settings.get("veo_model"),
        ),
        ShotstackProvider(
            api_key=settings.get("shotstack_api_key"),
            base_url=settings.get("shotstack_base_url"),
            environment=settings.get("shotstack_environment"),
            callback_url=settings.get("shotstack_callback_url"),
        ),
    ]
    if settings.get("generation_enable_stub", False):
        candidates.append(
            StubGenerationProvider(result_dir=f"{settings.get('media_root', './media')}/stub_results")
        )

    providers: dict[ProviderType, GenerationProvider] = {}
    for provider in candidates:
        provider_type = provider.provider_type
        if provider.is_supported():
            providers[provider_type] = provider
        else:
            logger.info(f"Provider {provider_type.value} is not configured; skipping")
    return providers


__all__ = [
    "GenerationProvider",
    "HTTPGenerationProvider",
    "HeyGenProvider",
    "ShotstackProvider",
    "StubGenerationProvider",
    "VeoProvider",
    "build_providers",
    "classify_http_failure",
]
