"""
cnbdagger: integration-test harness for Cloud Native Buildpacks.

Drives the lifecycle detect/build stages and `pack` to produce throwaway
images, runs them until healthy, and tears every resource down.

Usage:
    from cnbdagger import Dagger, Order, Group, HealthCheck, find_root

    with Dagger(find_root()) as dagger:
        detected = dagger.detect("fixtures/simple_app", Order(groups=[Group(buildpacks=[dagger.buildpack])]))
        app = dagger.pack("fixtures/simple_app", health_check=HealthCheck(command="curl -f localhost:8080"))
        app.start()
        app.http_get("/")
"""
from cnbdagger.builder import BuiltImage, ImageBuilder, PackBuild, random_tag
from cnbdagger.config import Settings, get_settings, reset_settings
from cnbdagger.exceptions import (
    ConfigError,
    DaggerError,
    DescriptorError,
    ExternalProcessError,
    InstanceError,
    PackagingError,
    ProbeError,
    ReadinessTimeoutError,
    SandboxError,
    TeardownError,
    UnhealthyInstanceError,
)
from cnbdagger.executable import CommandResult, Executable
from cnbdagger.instance import InstanceState, RunningInstance
from cnbdagger.models import (
    BuilderDescriptor,
    BuildPlanEntry,
    BuildpackInfo,
    BuildpackRef,
    DetectionResult,
    Group,
    HealthCheck,
    LaunchMetadata,
    LayerMetadata,
    Order,
    StackDescriptor,
)
from cnbdagger.pipeline import BuildOutput, PipelineRunner
from cnbdagger.probe import HTTPProbe
from cnbdagger.sandbox import ResourceSandbox, SandboxRole
from cnbdagger.session import Dagger, bundle_buildpack, find_root

__all__ = [
    # Session
    "Dagger",
    "find_root",
    "bundle_buildpack",
    # Components
    "ResourceSandbox",
    "SandboxRole",
    "PipelineRunner",
    "BuildOutput",
    "ImageBuilder",
    "PackBuild",
    "BuiltImage",
    "random_tag",
    "RunningInstance",
    "InstanceState",
    "HTTPProbe",
    "Executable",
    "CommandResult",
    # Descriptors
    "BuildpackInfo",
    "Group",
    "Order",
    "BuildPlanEntry",
    "DetectionResult",
    "LayerMetadata",
    "LaunchMetadata",
    "BuildpackRef",
    "StackDescriptor",
    "BuilderDescriptor",
    "HealthCheck",
    # Config
    "Settings",
    "get_settings",
    "reset_settings",
    # Errors
    "DaggerError",
    "ConfigError",
    "SandboxError",
    "ExternalProcessError",
    "PackagingError",
    "DescriptorError",
    "InstanceError",
    "UnhealthyInstanceError",
    "ReadinessTimeoutError",
    "TeardownError",
    "ProbeError",
]
