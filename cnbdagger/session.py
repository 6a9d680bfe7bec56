"""
Dagger: one harness session for testing a buildpack.

Owns the sandbox, the bundled buildpack, the pipeline runner, the image
builder and every instance it hands out. destroy() releases all of them.

Usage:
    with Dagger(find_root()) as dagger:
        detected = dagger.detect(app_dir, Order(groups=[Group(buildpacks=[dagger.buildpack])]))
        output = dagger.build(app_dir, detected.group, detected.build_plan)

        app = dagger.pack(app_dir, builder_descriptor)
        app.start()
        app.http_get("/")
"""

from __future__ import annotations

import logging
import random
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Union

from cnbdagger.builder import ImageBuilder
from cnbdagger.config import Settings, get_settings
from cnbdagger.descriptors import BUILDPACK_FILE, read_descriptor
from cnbdagger.exceptions import DaggerError, DescriptorError, SandboxError, TeardownError
from cnbdagger.executable import Runner
from cnbdagger.instance import RunningInstance
from cnbdagger.models import (
    BuilderDescriptor,
    BuildPlan,
    BuildpackDescriptor,
    BuildpackInfo,
    DetectionResult,
    Group,
    HealthCheck,
    Order,
)
from cnbdagger.pipeline import BuildOutput, PipelineRunner
from cnbdagger.runtime import pack_executable, runtime_executable
from cnbdagger.sandbox import ResourceSandbox

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def find_root(start: Optional[PathLike] = None, marker: str = BUILDPACK_FILE) -> Path:
    """
    Walk up from start (default: cwd) to the first directory containing marker.

    Raises:
        DescriptorError: If no such directory exists up to the filesystem root.
    """
    current = Path(start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        if (directory / marker).exists():
            return directory
    raise DescriptorError(f"could not find {marker} in the directory hierarchy of {current}")


def bundle_buildpack(root_dir: PathLike, dest: PathLike) -> None:
    """
    Copy a buildpack's buildpack.toml and bin/ into dest.

    Scripts under bin/ are made executable for the lifecycle user.
    """
    root_dir, dest = Path(root_dir), Path(dest)
    shutil.copyfile(root_dir / BUILDPACK_FILE, dest / BUILDPACK_FILE)
    (dest / BUILDPACK_FILE).chmod(0o644)

    bin_src = root_dir / "bin"
    if bin_src.is_dir():
        shutil.copytree(bin_src, dest / "bin")
        for script in (dest / "bin").iterdir():
            if script.is_file():
                script.chmod(0o755)
    else:
        logger.warning("Buildpack at %s has no bin/ directory", root_dir)


class Dagger:
    """
    Harness session for one buildpack rooted at root_dir.

    The session holds a single random source (seeded with seed when given)
    used for every generated image tag.
    """

    def __init__(
        self,
        root_dir: PathLike,
        *,
        settings: Optional[Settings] = None,
        seed: Optional[int] = None,
        runtime: Optional[Runner] = None,
        pack: Optional[Runner] = None,
    ) -> None:
        self.root_dir = Path(root_dir)
        self._settings = settings or get_settings()
        self._runtime = runtime or runtime_executable(self._settings)
        self._pack = pack or pack_executable(self._settings)
        self._rng = random.Random(seed)
        self._instances: List[RunningInstance] = []
        self._destroyed = False

        descriptor = read_descriptor(self.root_dir / BUILDPACK_FILE, BuildpackDescriptor)
        self.buildpack: BuildpackInfo = descriptor.info

        self.sandbox = ResourceSandbox(root=self._settings.tmp_root)
        self.sandbox.create()
        try:
            bundle_buildpack(self.root_dir, self.sandbox.staging)
        except OSError as exc:
            logger.error("Bundling %s failed: %s", self.root_dir, exc)
            try:
                self.sandbox.teardown()
            except TeardownError as cleanup_exc:
                logger.warning("Cleanup after failed bundling incomplete: %s", cleanup_exc)
            raise SandboxError(
                f"failed to bundle buildpack from {self.root_dir}: {exc}",
                role="staging",
            ) from exc

        self.pipeline = PipelineRunner(
            self.sandbox, self.buildpack, settings=self._settings, runtime=self._runtime
        )
        self.builder = ImageBuilder(
            settings=self._settings, pack=self._pack, runtime=self._runtime, rng=self._rng
        )
        logger.info("Session ready for %s %s", self.buildpack.id, self.buildpack.version)

    @property
    def instances(self) -> List[RunningInstance]:
        return list(self._instances)

    def detect(self, app_dir: PathLike, order: Order) -> DetectionResult:
        return self.pipeline.detect(app_dir, order)

    def build(self, app_dir: PathLike, group: Group, plan: BuildPlan) -> BuildOutput:
        return self.pipeline.build(app_dir, group, plan)

    def builder_descriptor(self) -> BuilderDescriptor:
        """Descriptor with just this session's buildpack in a single group."""
        return BuilderDescriptor.model_validate(
            {
                "buildpacks": [{"id": self.buildpack.id, "uri": str(self.sandbox.staging)}],
                "groups": [{"buildpacks": [self.buildpack.model_dump()]}],
            }
        )

    def pack(
        self,
        app_dir: PathLike,
        descriptor: Optional[BuilderDescriptor] = None,
        *,
        label: str = "",
        health_check: Optional[HealthCheck] = None,
        env: Optional[Dict[str, str]] = None,
        build_env: Optional[Dict[str, str]] = None,
    ) -> RunningInstance:
        """
        Build app_dir into an image and return an unstarted instance of it.

        The instance is tracked and destroyed with the session.
        """
        if self._destroyed:
            raise DaggerError("session already destroyed", code="session_destroyed")
        built = self.builder.pack(app_dir, descriptor or self.builder_descriptor(), env=build_env)
        instance = RunningInstance(
            built.tag,
            label=label or Path(app_dir).name,
            health_check=health_check,
            env=env,
            settings=self._settings,
            runtime=self._runtime,
        )
        self._instances.append(instance)
        return instance

    def destroy(self) -> None:
        """
        Destroy instances, builder images and the sandbox.

        Every resource is attempted; failures are reported together.
        Calling it again is a no-op once everything has been released.
        """
        errors: List[tuple[str, BaseException]] = []

        remaining: List[RunningInstance] = []
        for instance in self._instances:
            try:
                instance.destroy()
            except TeardownError as exc:
                errors.extend(exc.errors)
                remaining.append(instance)
        self._instances = remaining

        for step in (self.builder.close, self.sandbox.teardown):
            try:
                step()
            except TeardownError as exc:
                errors.extend(exc.errors)

        self._destroyed = True
        if errors:
            raise TeardownError("session teardown incomplete", errors=errors)

    def __enter__(self) -> "Dagger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()
