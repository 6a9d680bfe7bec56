"""
Harness configuration from environment variables.

Usage:
    from cnbdagger.config import get_settings

    settings = get_settings()
    print(settings.build_image, settings.runtime)
"""

from functools import lru_cache
from typing import Optional
import os

from cnbdagger.exceptions import ConfigError


def _env_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default: str, cast=float):
    raw = os.getenv(name, default)
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


class Settings:
    """Harness configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Stack images handed to the lifecycle and to pack
        self.build_image: Optional[str] = os.getenv("CNB_BUILD_IMAGE") or None
        self.run_image: Optional[str] = os.getenv("CNB_RUN_IMAGE") or None

        # External tools
        self.runtime: str = os.getenv("DAGGER_CONTAINER_RUNTIME", "docker")
        self.pack_cli: str = os.getenv("DAGGER_PACK_CLI", "pack")

        # Packaging
        self.default_builder: str = os.getenv(
            "DAGGER_DEFAULT_BUILDER", "cloudfoundry/cnb:cflinuxfs3"
        )
        self.builder_prefix: str = os.getenv(
            "DAGGER_BUILDER_PREFIX", "cnb-acceptance-builder"
        )
        self.image_tag_length: int = _env_number("DAGGER_IMAGE_TAG_LENGTH", "16", int)
        self.fix_builder_permissions: bool = _env_truthy(
            os.getenv("DAGGER_FIX_BUILDER_PERMISSIONS")
        )

        # Sandbox
        self.tmp_root: Optional[str] = os.getenv("DAGGER_TMP_ROOT") or None

        # Readiness polling
        self.ready_timeout: float = _env_number("DAGGER_READY_TIMEOUT", "40")
        self.poll_interval: float = _env_number("DAGGER_POLL_INTERVAL", "1")

        # HTTP probe
        self.probe_timeout: float = _env_number("DAGGER_PROBE_TIMEOUT", "10")

    def require_build_image(self) -> str:
        if not self.build_image:
            raise ConfigError("CNB_BUILD_IMAGE is not set", code="missing_build_image")
        return self.build_image

    def require_run_image(self) -> str:
        if not self.run_image:
            raise ConfigError("CNB_RUN_IMAGE is not set", code="missing_run_image")
        return self.run_image


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
