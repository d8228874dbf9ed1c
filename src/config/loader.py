"""
Configuration loader for the TikTok Shop ledger sync service.

Loads configuration from YAML files and environment variables with type safety
and nested key access.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

# Global configuration cache
_config_cache: dict[str, Any] | None = None

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class ConfigurationError(ValueError):
    """Missing or invalid configuration. Fatal at process start."""


def load_config(config_path: str = "config/app.yaml") -> dict[str, Any]:
    """Load configuration from YAML file with environment variable support."""
    global _config_cache

    if _config_cache is not None:
        return _config_cache

    # Load environment variables
    load_dotenv()

    # Relative paths resolve against the working directory first, then the project root
    config_file = Path(config_path)
    if not config_file.is_absolute() and not config_file.exists():
        config_file = PROJECT_ROOT / config_path
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file) as f:
        config = yaml.safe_load(f) or {}

    _config_cache = config
    return config


def cfg(key: str, default: Any = None) -> Any:
    """
    Get configuration value using dot notation.

    Args:
        key: Dot-separated key path (e.g., "integrations.tiktok.enabled")
        default: Default value if key is not found

    Returns:
        Configuration value or default

    Examples:
        cfg("global.timezone", "UTC")
        cfg("integrations.tiktok.reconcile.platform_fee_percent", 9)
    """
    config = load_config()

    if "." not in key:
        return config.get(key, default)

    keys = key.split(".")
    value = config

    try:
        for k in keys:
            value = value[k]
        return value
    except (KeyError, TypeError):
        return default


def env(key: str, default: str = None) -> str | None:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


def is_integration_enabled(integration: str) -> bool:
    """Check if an integration is enabled."""
    return cfg(f"integrations.{integration}.enabled", False)


def get_job_config(integration: str, job: str) -> dict[str, Any]:
    """Get configuration for a specific job."""
    return cfg(f"integrations.{integration}.{job}", {})


def get_page_size(default: int = 50) -> int:
    """Page size used for every paginated TikTok list call."""
    return int(cfg("integrations.tiktok.sync.page_size", default))


def get_platform_fee_percent(default: float = 9) -> float:
    """Estimated platform fee percent applied when no settlement exists."""
    return float(cfg("integrations.tiktok.reconcile.platform_fee_percent", default))


def get_database_url() -> str:
    """Get database URL from environment."""
    db_url = env("DATABASE_URL")
    if not db_url:
        raise ConfigurationError("DATABASE_URL environment variable is required")
    return db_url


def get_required_env(key: str) -> str:
    """
    Get required environment variable or raise error.

    Raises:
        ConfigurationError: If environment variable is not set
    """
    value = env(key)
    if not value:
        raise ConfigurationError(f"{key} environment variable is required")
    return value


def get_tiktok_config() -> dict[str, str]:
    """Get TikTok Shop application credentials from environment."""
    return {
        "app_key": get_required_env("TIKTOK_APP_KEY"),
        "app_secret": get_required_env("TIKTOK_APP_SECRET"),
        "api_base": env("TIKTOK_API_BASE", "https://open-api.tiktokglobalshop.com"),
        "auth_base": env("TIKTOK_AUTH_BASE", "https://services.tiktokshop.com"),
    }


def validate_config() -> None:
    """Validate configuration and required environment variables."""
    errors = []

    try:
        get_database_url()
    except ConfigurationError as e:
        errors.append(str(e))

    if is_integration_enabled("tiktok"):
        try:
            get_tiktok_config()
        except ConfigurationError as e:
            errors.append(f"TikTok: {e}")

    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        )

