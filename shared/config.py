"""
Configuration management for services.
"""

import json
import os
from typing import Any

import yaml

from dotenv import load_dotenv


class ServiceConfig:
    """Configuration management for services using environment variables."""

    def __init__(self) -> None:
        """Initialize configuration by loading environment variables."""
        # Always load .env from the project root (where app.py is located)
        env_path = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.env"))
        load_dotenv(dotenv_path=env_path, override=False)
        self.config: dict[str, Any] = {}
        self.pipeline_config: dict[str, Any] = {}
        self.pipeline_config_path = os.getenv(
            "PIPELINE_CONFIG_PATH",
            os.path.join(os.path.dirname(__file__), "pipeline.yaml"),
        )
        self.load_from_env()
        self.load_pipeline_config()

    def load_from_env(self) -> None:
        """Load configuration from environment variables."""
        media_root = os.getenv("MEDIA_ROOT", "/app/media")
        self.config = {
            "database_url": os.getenv("DATABASE_URL"),
            "media_root": media_root,
            "staging_dir": os.getenv("STAGING_DIR", os.path.join(media_root, "staging")),
            "debug": os.getenv("DEBUG", "false").lower() == "true",
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "allowed_origins": json.loads(os.getenv("ALLOWED_ORIGINS", '["*"]')),
            # Durable storage
            "storage_backend": os.getenv("STORAGE_BACKEND", "local"),
            "storage_bucket": os.getenv("STORAGE_BUCKET", "slidecast-assets"),
            "storage_signing_secret": os.getenv("STORAGE_SIGNING_SECRET", "local-development-secret"),
            "storage_public_base_url": os.getenv("STORAGE_PUBLIC_BASE_URL", "http://localhost:8000/media"),
            "r2_endpoint": os.getenv("R2_ENDPOINT"),
            "r2_access_key_id": os.getenv("R2_ACCESS_KEY_ID"),
            "r2_secret_access_key": os.getenv("R2_SECRET_ACCESS_KEY"),
            "r2_region": os.getenv("R2_REGION", "auto"),
            # Generation providers
            "heygen_api_key": os.getenv("HEYGEN_API_KEY"),
            "heygen_base_url": os.getenv("HEYGEN_BASE_URL", "https://api.heygen.com"),
            "heygen_default_avatar_id": os.getenv("HEYGEN_DEFAULT_AVATAR_ID", "Brandon_expressive2_public"),
            "heygen_webhook_url": os.getenv("HEYGEN_WEBHOOK_URL"),
            "heygen_test_mode": os.getenv("HEYGEN_TEST_MODE", "false").lower() == "true",
            "veo_api_key": os.getenv("VEO_API_KEY"),
            "veo_base_url": os.getenv("VEO_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
            "veo_model": os.getenv("VEO_MODEL", "veo-3.0-fast-generate-001"),
            "shotstack_api_key": os.getenv("SHOTSTACK_API_KEY"),
            "shotstack_base_url": os.getenv("SHOTSTACK_BASE_URL", "https://api.shotstack.io"),
            "shotstack_environment": os.getenv("SHOTSTACK_ENVIRONMENT", "sandbox"),
            "shotstack_callback_url": os.getenv("SHOTSTACK_CALLBACK_URL"),
            "generation_enable_stub": os.getenv("GENERATION_ENABLE_STUB", "false").lower() == "true",
        }

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self.config.get(key, default)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value.

        Args:
            key: Configuration key
            value: Configuration value
        """
        self.config[key] = value

    def reload(self) -> None:
        """Reload configuration from environment variables."""
        self.load_from_env()
        self.load_pipeline_config()

    def load_pipeline_config(self) -> None:
        """Load pipeline configuration from YAML file."""
        path = os.path.abspath(self.pipeline_config_path)
        try:
            with open(path, "r", encoding="utf-8") as stream:
                data = yaml.safe_load(stream) or {}
        except FileNotFoundError:
            data = {}
        self.pipeline_config = data

    def get_pipeline_value(self, path: str, default: Any = None) -> Any:
        """Retrieve a pipeline configuration value via dotted path."""
        env_override_key = f"PIPELINE_FLAG_{path.replace('.', '_').upper()}"
        env_value = os.getenv(env_override_key)
        if env_value is not None:
            return self._coerce_env_value(env_value, default)

        node: Any = self.pipeline_config
        for part in path.split("."):
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return node if node is not None else default

    def get_pipeline_section(self, path: str) -> dict[str, Any]:
        """Return a pipeline mapping via dotted path, or an empty dict."""
        section = self.get_pipeline_value(path, {})
        return dict(section) if isinstance(section, dict) else {}

    def set_pipeline_config(self, pipeline_config: dict[str, Any]) -> None:
        """Override pipeline configuration (useful for tests)."""
        self.pipeline_config = pipeline_config

    @staticmethod
    def _coerce_env_value(raw: str, default: Any) -> Any:
        lowered = raw.lower()
        if lowered in {"true", "false"}:
            return lowered == "true"
        if lowered.replace(".", "", 1).isdigit():
            try:
                return float(lowered) if "." in lowered else int(lowered)
            except ValueError:
                return raw
        return raw or default


# Global configuration instance
config = ServiceConfig()
