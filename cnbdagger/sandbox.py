"""
ResourceSandbox: ephemeral directories owned by one harness session.

Roles:
- workspace: lifecycle output (group.toml, plan.toml, layers)
- cache: lifecycle build cache
- inputs: descriptors written for the lifecycle (order.toml, ...)
- staging: the bundled buildpack mounted at /buildpacks/<id>/<version>

Usage:
    with ResourceSandbox().create() as sandbox:
        sandbox.inputs / "order.toml"

Every created path is recorded before anything else can fail, so teardown
removes exactly what was allocated. Teardown is idempotent.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from cnbdagger.exceptions import SandboxError, TeardownError

logger = logging.getLogger(__name__)


class SandboxRole(str, Enum):
    WORKSPACE = "workspace"
    CACHE = "cache"
    INPUTS = "inputs"
    STAGING = "staging"


# The lifecycle runs as an unprivileged user in another container and
# writes into these roots.
ROLE_MODES: Dict[SandboxRole, int] = {
    SandboxRole.WORKSPACE: 0o777,
    SandboxRole.CACHE: 0o777,
    SandboxRole.INPUTS: 0o777,
    SandboxRole.STAGING: 0o755,
}


class ResourceSandbox:
    """
    Set of ephemeral directory roots for one session.

    Single owner, single thread. Not reusable after teardown.
    """

    def __init__(
        self,
        root: Optional[str] = None,
        roles: Iterable[SandboxRole] = tuple(SandboxRole),
        prefix: str = "cnbdagger-",
    ) -> None:
        self._root = root
        self._roles = list(roles)
        self._prefix = prefix
        self._paths: Dict[SandboxRole, Path] = {}

    def create(self) -> "ResourceSandbox":
        """
        Allocate every role.

        Raises:
            SandboxError: If any allocation fails. Roles allocated before the
                failure are removed before the error propagates.
        """
        for role in self._roles:
            try:
                self._allocate(role)
            except OSError as exc:
                logger.error("Sandbox allocation failed for %s: %s", role.value, exc)
                try:
                    self.teardown()
                except TeardownError as cleanup_exc:
                    logger.warning("Cleanup after failed allocation incomplete: %s", cleanup_exc)
                raise SandboxError(
                    f"failed to allocate sandbox {role.value} directory: {exc}",
                    role=role.value,
                ) from exc
        logger.debug("Sandbox created: %s", {r.value: str(p) for r, p in self._paths.items()})
        return self

    def _allocate(self, role: SandboxRole) -> None:
        path = Path(tempfile.mkdtemp(prefix=f"{self._prefix}{role.value}-", dir=self._root))
        # Recorded before chmod so a chmod failure still gets cleaned up
        self._paths[role] = path
        os.chmod(path, ROLE_MODES.get(role, 0o755))

    def teardown(self) -> None:
        """
        Remove every allocated root.

        All roots are attempted even if one fails. Calling this on a sandbox
        that was never created, or again after a clean teardown, is a no-op.

        Raises:
            TeardownError: If one or more roots could not be removed. Those
                roots stay recorded and are retried by the next call.
        """
        errors: List[tuple[str, BaseException]] = []
        remaining: Dict[SandboxRole, Path] = {}
        for role, path in self._paths.items():
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to remove sandbox %s at %s: %s", role.value, path, exc)
                errors.append((f"remove {role.value} {path}", exc))
                remaining[role] = path
        self._paths = remaining
        if errors:
            raise TeardownError("sandbox teardown incomplete", errors=errors)

    def path(self, role: SandboxRole) -> Path:
        try:
            return self._paths[role]
        except KeyError:
            raise SandboxError(
                f"sandbox {role.value} directory is not allocated", role=role.value
            ) from None

    @property
    def allocated(self) -> Dict[SandboxRole, Path]:
        return dict(self._paths)

    @property
    def workspace(self) -> Path:
        return self.path(SandboxRole.WORKSPACE)

    @property
    def cache(self) -> Path:
        return self.path(SandboxRole.CACHE)

    @property
    def inputs(self) -> Path:
        return self.path(SandboxRole.INPUTS)

    @property
    def staging(self) -> Path:
        return self.path(SandboxRole.STAGING)

    def __enter__(self) -> "ResourceSandbox":
        if not self._paths:
            self.create()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()
