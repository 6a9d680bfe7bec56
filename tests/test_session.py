"""
Tests for the Dagger session.

The session is driven end to end against fake docker and pack runners;
sandbox directories live under DAGGER_TMP_ROOT so leaks are visible.
"""
from __future__ import annotations

import stat
from pathlib import Path

import pytest

import cnbdagger.sandbox as sandbox_module
import cnbdagger.session as session_module
from cnbdagger.config import Settings
from cnbdagger.exceptions import DaggerError, DescriptorError, SandboxError, TeardownError
from cnbdagger.instance import InstanceState
from cnbdagger.models import BuildpackInfo, Group, Order
from cnbdagger.session import Dagger, bundle_buildpack, find_root
from tests.fakes.fake_runtime import FakeLifecycle, FakeRunner, health_sequence

SAMPLE = BuildpackInfo(id="sample.buildpack", version="0.0.1")


def _docker() -> FakeRunner:
    return (
        FakeRunner("docker")
        .on("run", _run)
        .on("inspect", health_sequence(["running"]))
        .reply("port", stdout="8080/tcp -> 0.0.0.0:32768\n")
    )


_lifecycle = FakeLifecycle(launch={"processes": [{"type": "web", "command": "ruby app.rb"}]})


def _run(args):
    # `docker run --rm ...` drives the lifecycle, `docker run -d ...` starts an app.
    if "--rm" in args:
        return _lifecycle(args)
    return 0, "fedcba9876543210\n", ""


@pytest.fixture
def dagger(settings: Settings, buildpack_root: Path):
    session = Dagger(
        buildpack_root,
        settings=settings,
        seed=5,
        runtime=_docker(),
        pack=FakeRunner("pack"),
    )
    yield session
    session.destroy()


def test_find_root_walks_up(buildpack_root: Path) -> None:
    """find_root walks up to the directory holding buildpack.toml."""
    assert find_root(buildpack_root / "bin") == buildpack_root.resolve()


def test_find_root_without_marker_fails(tmp_path: Path) -> None:
    with pytest.raises(DescriptorError, match="no-such-descriptor"):
        find_root(tmp_path, marker="no-such-descriptor.toml")


def test_bundle_copies_descriptor_and_executable_scripts(buildpack_root: Path, tmp_path: Path) -> None:
    """Bundling copies buildpack.toml and makes bin/ scripts executable."""
    bundle_buildpack(buildpack_root, tmp_path)

    assert (tmp_path / "buildpack.toml").read_text() == (buildpack_root / "buildpack.toml").read_text()
    for script in ("detect", "build"):
        mode = stat.S_IMODE((tmp_path / "bin" / script).stat().st_mode)
        assert mode == 0o755


def test_bundle_without_bin_directory(tmp_path: Path) -> None:
    src = tmp_path / "src"
    src.mkdir()
    (src / "buildpack.toml").write_text('[buildpack]\nid = "x"\nversion = "1"\n')
    dest = tmp_path / "dest"
    dest.mkdir()

    bundle_buildpack(src, dest)

    assert (dest / "buildpack.toml").exists()
    assert not (dest / "bin").exists()


def test_session_reads_buildpack_and_stages_it(dagger: Dagger) -> None:
    """The session reads buildpack.toml and stages the buildpack."""
    assert dagger.buildpack == SAMPLE
    assert (dagger.sandbox.staging / "buildpack.toml").exists()
    assert (dagger.sandbox.staging / "bin" / "detect").exists()


def test_session_detect_then_build(dagger: Dagger, app_dir: Path) -> None:
    """Detect output feeds straight into build."""
    detected = dagger.detect(app_dir, Order(groups=[Group(buildpacks=[dagger.buildpack])]))
    output = dagger.build(app_dir, detected.group, detected.build_plan)

    assert detected.group.buildpacks == [SAMPLE]
    assert output.launch_metadata().process("web").command == "ruby app.rb"


def test_builder_descriptor_points_at_staging(dagger: Dagger) -> None:
    descriptor = dagger.builder_descriptor()

    assert descriptor.buildpacks[0].id == "sample.buildpack"
    assert descriptor.buildpacks[0].uri == str(dagger.sandbox.staging)
    assert descriptor.groups == [Group(buildpacks=[SAMPLE])]


def test_pack_returns_tracked_unstarted_instance(dagger: Dagger, app_dir: Path) -> None:
    """pack returns an unstarted instance owned by the session."""
    app = dagger.pack(app_dir)

    assert app.state is InstanceState.CREATED
    assert app.label == "simple_app"
    assert dagger.instances == [app]
    assert dagger.builder.builders


def test_destroy_releases_everything(settings: Settings, buildpack_root: Path, app_dir: Path) -> None:
    """Destroy releases the instance, builder images and sandbox."""
    docker = _docker()
    dagger = Dagger(buildpack_root, settings=settings, runtime=docker, pack=FakeRunner("pack"))
    app = dagger.pack(app_dir)
    app.start()

    dagger.destroy()

    assert app.state is InstanceState.DESTROYED
    assert dagger.instances == []
    assert dagger.builder.builders == ()
    assert list(Path(settings.tmp_root).iterdir()) == []
    assert docker.subcommands()[-5:] == ["stop", "rm", "rmi", "image", "rmi"]

    dagger.destroy()


def test_destroy_aggregates_failures(settings: Settings, buildpack_root: Path, app_dir: Path) -> None:
    """Failures from every resource are reported together."""
    docker = _docker().reply("rmi", exit_code=1, stderr="image is being used")
    dagger = Dagger(buildpack_root, settings=settings, runtime=docker, pack=FakeRunner("pack"))
    dagger.pack(app_dir)

    with pytest.raises(TeardownError) as excinfo:
        dagger.destroy()

    steps = [step for step, _ in excinfo.value.errors]
    assert len(steps) == 2
    assert all(step.startswith("rmi ") for step in steps)
    # The sandbox is still removed.
    assert list(Path(settings.tmp_root).iterdir()) == []


def test_pack_after_destroy_is_rejected(settings: Settings, buildpack_root: Path, app_dir: Path) -> None:
    dagger = Dagger(buildpack_root, settings=settings, runtime=_docker(), pack=FakeRunner("pack"))
    dagger.destroy()

    with pytest.raises(DaggerError, match="destroyed"):
        dagger.pack(app_dir)


def test_missing_buildpack_descriptor_allocates_nothing(settings: Settings, tmp_path: Path) -> None:
    """No sandbox is created when buildpack.toml is missing."""
    with pytest.raises(DescriptorError):
        Dagger(tmp_path / "empty", settings=settings, runtime=FakeRunner(), pack=FakeRunner("pack"))

    assert list(Path(settings.tmp_root).iterdir()) == []


def test_failed_bundling_removes_sandbox(
    settings: Settings, buildpack_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A bundling failure after allocation leaves no sandbox directories."""
    def broken_copytree(*args, **kwargs):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(session_module.shutil, "copytree", broken_copytree)

    with pytest.raises(SandboxError, match="No space left") as excinfo:
        Dagger(buildpack_root, settings=settings, runtime=FakeRunner(), pack=FakeRunner("pack"))

    assert excinfo.value.role == "staging"
    assert isinstance(excinfo.value.__cause__, OSError)
    assert list(Path(settings.tmp_root).iterdir()) == []


def test_failed_bundling_cause_survives_cleanup_failure(
    settings: Settings, buildpack_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The bundling error is raised even when the sandbox cannot be removed."""
    def broken_copytree(*args, **kwargs):
        raise OSError(28, "No space left on device")

    def broken_rmtree(*args, **kwargs):
        raise PermissionError("busy")

    monkeypatch.setattr(session_module.shutil, "copytree", broken_copytree)
    monkeypatch.setattr(sandbox_module.shutil, "rmtree", broken_rmtree)

    with pytest.raises(SandboxError, match="No space left"):
        Dagger(buildpack_root, settings=settings, runtime=FakeRunner(), pack=FakeRunner("pack"))
