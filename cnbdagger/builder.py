"""
ImageBuilder: turn a builder descriptor and an app source into an image.

Packaging steps:
1. Stage the BuilderDescriptor as a temporary builder.toml
2. `pack create-builder <builder> -b builder.toml`
3. Optional permissions fix-up of the builder image (some pack releases
   create /buildpacks unreadable by the lifecycle user)
4. `pack build <random tag> --builder <builder> --run-image <run image>`

PackBuild is the chainable wrapper around step 4 and can also be used on
its own against a published builder:

    built = (
        PackBuild(app_dir)
        .buildpacks("org.cloudfoundry.node")
        .env(NODE_ENV="production")
        .offline()
        .build()
    )
    print(built.tag, built.build_logs)

Every failing step raises PackagingError carrying the combined tool output.
"""

from __future__ import annotations

import logging
import os
import random
import string
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from cnbdagger.config import Settings, get_settings
from cnbdagger.descriptors import BUILDER_FILE, to_toml
from cnbdagger.exceptions import ExternalProcessError, PackagingError, TeardownError
from cnbdagger.executable import CommandResult, Runner
from cnbdagger.models import BuilderDescriptor
from cnbdagger.runtime import pack_executable, runtime_executable

logger = logging.getLogger(__name__)


def random_tag(rng: random.Random, length: int = 16) -> str:
    """Lowercase alphabetic identifier used as a throwaway image tag."""
    return "".join(rng.choice(string.ascii_lowercase) for _ in range(length))


@dataclass
class BuiltImage:
    """
    An application image produced by pack.

    Passed to RunningInstance to launch it.
    """

    # Image tag (e.g. "qzjrwhkdbnaoeltc")
    tag: str

    # Builder the image was built with
    builder: str

    # Combined pack output, for debugging failed assertions
    build_logs: str = ""


@dataclass
class PackBuild:
    """
    Chainable `pack build` invocation.

    Each method returns self for chaining. Arguments are emitted in a fixed
    order so that the command line is deterministic:

        pack build <image> --builder <b> [--run-image <r>]
            [--buildpack <id> ...] [--network none] [--no-pull]
            [-e K=V ...] [--path <dir>]
    """

    app_dir: Union[str, Path]
    _image: str = ""
    _builder: Optional[str] = None
    _run_image: Optional[str] = None
    _buildpacks: List[str] = field(default_factory=list)
    _env: Dict[str, str] = field(default_factory=dict)
    _offline: bool = False
    _no_pull: bool = False
    _with_path: bool = False

    def image(self, name: str) -> "PackBuild":
        self._image = name
        return self

    def builder(self, ref: str) -> "PackBuild":
        self._builder = ref
        return self

    def run_image(self, ref: str) -> "PackBuild":
        self._run_image = ref
        return self

    def buildpacks(self, *ids: str) -> "PackBuild":
        self._buildpacks.extend(ids)
        return self

    def env(self, variables: Optional[Dict[str, str]] = None, **kwargs: str) -> "PackBuild":
        self._env.update(variables or {})
        self._env.update(kwargs)
        return self

    def offline(self) -> "PackBuild":
        """Build without network access and without pulling images."""
        self._offline = True
        return self

    def no_pull(self) -> "PackBuild":
        self._no_pull = True
        return self

    def with_path(self) -> "PackBuild":
        """Pass --path explicitly instead of relying on the working directory."""
        self._with_path = True
        return self

    def to_args(self, default_builder: str) -> List[str]:
        args = ["build", self._image, "--builder", self._builder or default_builder]
        if self._run_image:
            args += ["--run-image", self._run_image]
        for bp in self._buildpacks:
            args += ["--buildpack", bp]
        if self._offline:
            args += ["--network", "none"]
        if self._offline or self._no_pull:
            args.append("--no-pull")
        for key in sorted(self._env):
            args += ["-e", f"{key}={self._env[key]}"]
        if self._with_path:
            args += ["--path", str(Path(self.app_dir).resolve())]
        return args

    def build(
        self,
        *,
        pack: Optional[Runner] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ) -> BuiltImage:
        """
        Run pack build in app_dir.

        When no image name was set, a random tag is generated from rng.

        Raises:
            PackagingError: If pack exits nonzero or cannot be started.
        """
        settings = settings or get_settings()
        pack = pack or pack_executable(settings)
        if not self._image:
            self._image = random_tag(rng or random.Random(), settings.image_tag_length)

        args = self.to_args(settings.default_builder)
        logger.info("Packing %s as %s", self.app_dir, self._image)
        result = _run_step(pack, "pack build", args, cwd=self.app_dir)
        return BuiltImage(
            tag=self._image,
            builder=self._builder or settings.default_builder,
            build_logs=result.output,
        )


def _run_step(
    runner: Runner,
    stage: str,
    args: List[str],
    cwd: Optional[Union[str, Path]] = None,
) -> CommandResult:
    try:
        return runner.execute(*args, cwd=cwd)
    except ExternalProcessError as exc:
        raise PackagingError(
            f"{stage} failed",
            stage=stage,
            command=exc.command,
            exit_code=exc.exit_code,
            stdout=exc.stdout,
            stderr=exc.stderr,
        ) from exc


class ImageBuilder:
    """
    Builds application images through a freshly created builder.

    Holds one random source for every generated tag; pass a seeded
    random.Random for reproducible names within a session.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        pack: Optional[Runner] = None,
        runtime: Optional[Runner] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._pack = pack or pack_executable(self._settings)
        self._runtime = runtime or runtime_executable(self._settings)
        self._rng = rng or random.Random()
        self._builders: List[str] = []

    @property
    def builders(self) -> Tuple[str, ...]:
        """Intermediate builder images created and not yet removed."""
        return tuple(self._builders)

    def new_tag(self) -> str:
        return random_tag(self._rng, self._settings.image_tag_length)

    def pack(
        self,
        source_dir: Union[str, Path],
        descriptor: BuilderDescriptor,
        *,
        env: Optional[Dict[str, str]] = None,
    ) -> BuiltImage:
        """
        Build source_dir into an image using a builder made from descriptor.

        Raises:
            ConfigError: If CNB_RUN_IMAGE is not set
            PackagingError: If any packaging step fails
        """
        run_image = self._settings.require_run_image()
        builder = self.create_builder(descriptor)

        build = (
            PackBuild(source_dir)
            .image(self.new_tag())
            .builder(builder)
            .run_image(run_image)
            .no_pull()
            .with_path()
            .env(env)
        )
        return build.build(pack=self._pack, settings=self._settings, rng=self._rng)

    def create_builder(self, descriptor: BuilderDescriptor) -> str:
        """Materialize descriptor as a builder image and return its name."""
        builder = f"{self._settings.builder_prefix}-{self.new_tag()}"
        document = to_toml(descriptor)

        fd, path = tempfile.mkstemp(suffix=f"-{BUILDER_FILE}", prefix="cnbdagger-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(document)
            logger.info("Creating builder %s", builder)
            _run_step(self._pack, "pack create-builder", ["create-builder", builder, "-b", path])
        finally:
            os.unlink(path)

        self._builders.append(builder)
        if self._settings.fix_builder_permissions:
            self._fix_permissions(builder)
        return builder

    def _fix_permissions(self, builder: str) -> None:
        """Make /buildpacks readable in the builder image and re-commit it."""
        container = f"{builder}-fixup"
        try:
            _run_step(
                self._runtime,
                "builder permissions fix-up",
                ["run", "--name", container, "--user", "root", builder, "chmod", "0755", "/buildpacks"],
            )
            _run_step(self._runtime, "builder commit", ["commit", container, builder])
        finally:
            # The container exists even when chmod exits nonzero
            try:
                self._runtime.execute("rm", "-f", container)
            except ExternalProcessError as exc:
                logger.warning("Failed to remove fix-up container %s: %s", container, exc)

    def close(self) -> None:
        """
        Remove intermediate builder images.

        Raises:
            TeardownError: If any image could not be removed.
        """
        errors: List[tuple[str, BaseException]] = []
        remaining: List[str] = []
        for builder in self._builders:
            try:
                self._runtime.execute("rmi", "-f", builder)
            except ExternalProcessError as exc:
                logger.warning("Failed to remove builder image %s: %s", builder, exc)
                errors.append((f"rmi {builder}", exc))
                remaining.append(builder)
        self._builders = remaining
        if errors:
            raise TeardownError("builder cleanup incomplete", errors=errors)


__all__ = ["BuiltImage", "PackBuild", "ImageBuilder", "random_tag"]
