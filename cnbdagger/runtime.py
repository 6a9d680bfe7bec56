"""
Container runtime detection and abstraction.

Handles selection of the container runtime CLI (Docker or Podman) that the
harness uses to run the lifecycle, fix up builder images and launch built
applications.
"""

from __future__ import annotations

import shutil
import subprocess
import logging
from enum import Enum
from typing import Optional

from cnbdagger.config import Settings, get_settings
from cnbdagger.exceptions import ConfigError
from cnbdagger.executable import Executable

logger = logging.getLogger(__name__)


class ContainerRuntime(Enum):
    DOCKER = "docker"
    PODMAN = "podman"


def _check_works(command: str) -> bool:
    """Verify the runtime CLI is actually usable."""
    try:
        subprocess.run([command, "info"], capture_output=True, check=True, timeout=5)
        return True
    except (subprocess.SubprocessError, OSError):
        return False


def detect_runtime() -> ContainerRuntime:
    """
    Detect available container runtime.

    Priority:
    1. Docker (the lifecycle images and pack both target the Docker daemon)
    2. Podman (fallback)

    Raises:
        ConfigError: If no supported runtime is found/working.
    """
    for runtime in (ContainerRuntime.DOCKER, ContainerRuntime.PODMAN):
        if shutil.which(runtime.value) and _check_works(runtime.value):
            logger.info("Detected container runtime: %s", runtime.value)
            return runtime

    raise ConfigError(
        "No container runtime available. Please install Docker or Podman.",
        code="no_container_runtime",
    )


def runtime_command(settings: Optional[Settings] = None) -> str:
    """
    Resolve the runtime CLI from settings.

    DAGGER_CONTAINER_RUNTIME may name a command or path directly, or be
    "auto" to detect one.
    """
    settings = settings or get_settings()
    if settings.runtime.strip().lower() == "auto":
        return detect_runtime().value
    return settings.runtime


def runtime_executable(settings: Optional[Settings] = None) -> Executable:
    return Executable(runtime_command(settings))


def pack_executable(settings: Optional[Settings] = None) -> Executable:
    settings = settings or get_settings()
    return Executable(settings.pack_cli)
