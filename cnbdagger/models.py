"""
Data model of the buildpack interchange descriptors.

Every TOML file the harness writes for the lifecycle or for pack, and every
file it reads back, has a model here. Decoding goes through pydantic so a
malformed descriptor fails at the parse boundary instead of deep inside a
test.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BuildpackInfo(BaseModel):
    """Identifier and version of one buildpack."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    version: str = ""


class Group(BaseModel):
    """Ordered selection of buildpacks chosen together for one build."""

    model_config = ConfigDict(frozen=True)

    buildpacks: List[BuildpackInfo] = Field(default_factory=list)


class Order(BaseModel):
    """Candidate groups handed to the detect stage, tried in order."""

    groups: List[Group] = Field(default_factory=list)


class BuildPlanEntry(BaseModel):
    """
    One requirement in a build plan.

    The plan is opaque to the harness: unknown keys are kept so that
    whatever detect produced is handed to build unchanged.
    """

    model_config = ConfigDict(extra="allow")

    version: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


BuildPlan = Dict[str, BuildPlanEntry]


class DetectionResult(BaseModel):
    """Group chosen by the detect stage plus the build plan it produced."""

    model_config = ConfigDict(frozen=True)

    group: Group
    build_plan: BuildPlan = Field(default_factory=dict)


class LayerMetadata(BaseModel):
    """Per-component metadata file written by the build stage."""

    model_config = ConfigDict(extra="allow")

    version: str = ""


class Process(BaseModel):
    type: str
    command: str


class LaunchMetadata(BaseModel):
    """launch.toml: processes the built image can run."""

    model_config = ConfigDict(extra="allow")

    processes: List[Process] = Field(default_factory=list)

    def process(self, process_type: str) -> Optional[Process]:
        for proc in self.processes:
            if proc.type == process_type:
                return proc
        return None


class BuildpackRef(BaseModel):
    """A buildpack declared in a builder descriptor: id + source location."""

    id: str = Field(min_length=1)
    uri: str = Field(min_length=1)


class StackDescriptor(BaseModel):
    """Optional [stack] table of a builder descriptor."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    build_image: Optional[str] = Field(default=None, alias="build-image")
    run_image: Optional[str] = Field(default=None, alias="run-image")


class BuilderDescriptor(BaseModel):
    """
    Declarative builder definition consumed by `pack create-builder`.

    Precondition: every group only references buildpacks declared in
    `buildpacks`. This is the producer's responsibility and is not checked.
    """

    buildpacks: List[BuildpackRef] = Field(default_factory=list)
    groups: List[Group] = Field(default_factory=list)
    stack: Optional[StackDescriptor] = None


class BuildpackTable(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    version: str = Field(min_length=1)
    name: str = ""


class BuildpackDescriptor(BaseModel):
    """The [buildpack] table of a buildpack's own buildpack.toml."""

    model_config = ConfigDict(extra="allow")

    buildpack: BuildpackTable

    @property
    def info(self) -> BuildpackInfo:
        return BuildpackInfo(id=self.buildpack.id, version=self.buildpack.version)


class HealthCheck(BaseModel):
    """Health-check policy passed to the runtime when starting an instance."""

    command: str = Field(min_length=1)
    interval: float = Field(default=1.0, gt=0)
    timeout: float = Field(default=40.0, gt=0)
    retries: Optional[int] = Field(default=None, ge=1)


__all__ = [
    "BuildpackInfo",
    "Group",
    "Order",
    "BuildPlanEntry",
    "BuildPlan",
    "DetectionResult",
    "LayerMetadata",
    "Process",
    "LaunchMetadata",
    "BuildpackRef",
    "StackDescriptor",
    "BuilderDescriptor",
    "BuildpackTable",
    "BuildpackDescriptor",
    "HealthCheck",
]
