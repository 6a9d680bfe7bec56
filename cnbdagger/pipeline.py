"""
PipelineRunner: the lifecycle detect and build stages.

Each stage follows the same protocol:
1. Write input descriptors into the sandbox inputs root
2. Run the lifecycle binary inside the build image with the sandbox roots
   mounted and a fixed flag set
3. Decode the declared outputs from the workspace root

Mount layout inside the lifecycle container:
    /workspace                      <- sandbox workspace
    /workspace/app                  <- application source
    /cache                          <- sandbox cache (build only)
    /buildpacks/<id>/latest         <- sandbox staging (bundled buildpack)
    /buildpacks/<id>/<version>      <- sandbox staging
    /inputs                         <- sandbox inputs

Stages are not retried; the lifecycle is assumed deterministic for
identical inputs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from cnbdagger.config import Settings, get_settings
from cnbdagger.descriptors import (
    GROUP_FILE,
    LAUNCH_FILE,
    ORDER_FILE,
    PLAN_FILE,
    read_build_plan,
    read_descriptor,
    write_descriptor,
)
from cnbdagger.executable import Runner
from cnbdagger.models import (
    BuildPlan,
    BuildpackInfo,
    DetectionResult,
    Group,
    LaunchMetadata,
    LayerMetadata,
    Order,
)
from cnbdagger.runtime import runtime_executable
from cnbdagger.sandbox import ResourceSandbox

logger = logging.getLogger(__name__)

WORKSPACE_MOUNT = "/workspace"
APP_MOUNT = "/workspace/app"
CACHE_MOUNT = "/cache"
BUILDPACKS_MOUNT = "/buildpacks"
INPUTS_MOUNT = "/inputs"

DETECTOR = "/lifecycle/detector"
BUILDER = "/lifecycle/builder"


@dataclass
class BuildOutput:
    """
    Filesystem result of the build stage for one buildpack.

    Files are read lazily. An absent file is reported as None; a malformed
    one raises DescriptorError.
    """

    launch_root: Path
    cache_root: Path

    def layer_metadata(self, layer: str) -> Optional[LayerMetadata]:
        """Metadata of one contributed layer (<launch_root>/<layer>.toml)."""
        return read_descriptor(
            self.launch_root / f"{layer}.toml", LayerMetadata, required=False
        )

    def launch_metadata(self) -> Optional[LaunchMetadata]:
        """Processes declared in <launch_root>/launch.toml."""
        return read_descriptor(self.launch_root / LAUNCH_FILE, LaunchMetadata, required=False)


class PipelineRunner:
    """
    Runs lifecycle stages for one buildpack against one sandbox.

    Usage:
        runner = PipelineRunner(sandbox, buildpack_info)
        detected = runner.detect(app_dir, Order(groups=[group]))
        output = runner.build(app_dir, detected.group, detected.build_plan)
    """

    def __init__(
        self,
        sandbox: ResourceSandbox,
        buildpack: BuildpackInfo,
        *,
        settings: Optional[Settings] = None,
        runtime: Optional[Runner] = None,
    ) -> None:
        self._sandbox = sandbox
        self._buildpack = buildpack
        self._settings = settings or get_settings()
        self._runtime = runtime or runtime_executable(self._settings)

    @property
    def buildpack(self) -> BuildpackInfo:
        return self._buildpack

    def detect(self, app_dir: Union[str, Path], order: Order) -> DetectionResult:
        """
        Run the detect stage.

        Raises:
            ConfigError: If CNB_BUILD_IMAGE is not set
            ExternalProcessError: If the detector exits nonzero
            DescriptorError: If group.toml or plan.toml is missing or malformed
        """
        build_image = self._settings.require_build_image()
        self._write_input(order, ORDER_FILE)

        logger.info("Detecting %s with %d candidate group(s)", app_dir, len(order.groups))
        self._runtime.execute(
            *self._run_args(app_dir, build_image, with_cache=False),
            DETECTOR,
            "-buildpacks", BUILDPACKS_MOUNT,
            "-order", f"{INPUTS_MOUNT}/{ORDER_FILE}",
            "-group", f"{WORKSPACE_MOUNT}/{GROUP_FILE}",
            "-plan", f"{WORKSPACE_MOUNT}/{PLAN_FILE}",
        )

        workspace = self._sandbox.workspace
        group = read_descriptor(workspace / GROUP_FILE, Group)
        plan = read_build_plan(workspace / PLAN_FILE)
        return DetectionResult(group=group, build_plan=plan)

    def build(self, app_dir: Union[str, Path], group: Group, plan: BuildPlan) -> BuildOutput:
        """
        Run the build stage with a group and plan (usually from detect).

        Raises:
            ConfigError: If CNB_BUILD_IMAGE is not set
            ExternalProcessError: If the builder exits nonzero
        """
        build_image = self._settings.require_build_image()
        self._write_input(group, GROUP_FILE)
        self._write_input(plan, PLAN_FILE)

        logger.info("Building %s with group %s", app_dir, [bp.id for bp in group.buildpacks])
        self._runtime.execute(
            *self._run_args(app_dir, build_image, with_cache=True),
            BUILDER,
            "-buildpacks", BUILDPACKS_MOUNT,
            "-group", f"{INPUTS_MOUNT}/{GROUP_FILE}",
            "-plan", f"{INPUTS_MOUNT}/{PLAN_FILE}",
        )

        return BuildOutput(
            launch_root=self._sandbox.workspace / self._buildpack.id,
            cache_root=self._sandbox.cache / self._buildpack.id,
        )

    def _write_input(self, data, file_name: str) -> Path:
        return write_descriptor(data, self._sandbox.inputs / file_name)

    def _run_args(self, app_dir: Union[str, Path], build_image: str, *, with_cache: bool) -> List[str]:
        bp = self._buildpack
        staging = self._sandbox.staging
        args = [
            "run", "--rm",
            "-v", f"{self._sandbox.workspace}:{WORKSPACE_MOUNT}",
            "-v", f"{Path(app_dir).resolve()}:{APP_MOUNT}",
        ]
        if with_cache:
            args += ["-v", f"{self._sandbox.cache}:{CACHE_MOUNT}"]
        args += [
            "-v", f"{staging}:{BUILDPACKS_MOUNT}/{bp.id}/latest",
            "-v", f"{staging}:{BUILDPACKS_MOUNT}/{bp.id}/{bp.version}",
            "-v", f"{self._sandbox.inputs}:{INPUTS_MOUNT}",
            build_image,
        ]
        return args
