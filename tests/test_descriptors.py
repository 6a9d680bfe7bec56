"""
Tests for TOML descriptor encoding and decoding.

These tests verify:
1. Builder descriptors round-trip with buildpack and group order intact
2. Key names match what pack and the lifecycle expect
3. Missing, malformed and wrongly shaped files fail at the parse boundary
"""
from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from cnbdagger.descriptors import (
    load_toml,
    read_build_plan,
    read_descriptor,
    to_toml,
    write_descriptor,
)
from cnbdagger.exceptions import DescriptorError
from cnbdagger.models import (
    BuilderDescriptor,
    BuildpackInfo,
    BuildpackRef,
    Group,
    LaunchMetadata,
    Order,
    StackDescriptor,
)


def _builder_descriptor() -> BuilderDescriptor:
    return BuilderDescriptor(
        buildpacks=[
            BuildpackRef(id="org.cloudfoundry.node", uri="/tmp/node"),
            BuildpackRef(id="org.cloudfoundry.npm", uri="/tmp/npm"),
            BuildpackRef(id="org.cloudfoundry.yarn", uri="https://example.com/yarn.tgz"),
        ],
        groups=[
            Group(buildpacks=[
                BuildpackInfo(id="org.cloudfoundry.node", version="0.0.1"),
                BuildpackInfo(id="org.cloudfoundry.npm", version="0.0.2"),
            ]),
            Group(buildpacks=[
                BuildpackInfo(id="org.cloudfoundry.node", version="0.0.1"),
                BuildpackInfo(id="org.cloudfoundry.yarn", version="0.0.3"),
            ]),
        ],
    )


def test_builder_descriptor_round_trip_preserves_order(tmp_path: Path) -> None:
    """Buildpacks and groups come back in the order written."""
    descriptor = _builder_descriptor()
    path = write_descriptor(descriptor, tmp_path / "builder.toml")

    decoded = read_descriptor(path, BuilderDescriptor)

    assert decoded == descriptor
    assert [bp.id for bp in decoded.buildpacks] == [
        "org.cloudfoundry.node",
        "org.cloudfoundry.npm",
        "org.cloudfoundry.yarn",
    ]
    assert [[bp.id for bp in g.buildpacks] for g in decoded.groups] == [
        ["org.cloudfoundry.node", "org.cloudfoundry.npm"],
        ["org.cloudfoundry.node", "org.cloudfoundry.yarn"],
    ]


def test_builder_descriptor_uses_pack_key_names() -> None:
    """Stack images are written with pack's dashed key names."""
    descriptor = _builder_descriptor().model_copy(
        update={"stack": StackDescriptor(id="org.cloudfoundry.stacks.cflinuxfs3", build_image="b", run_image="r")}
    )

    data = tomllib.loads(to_toml(descriptor))

    assert data["buildpacks"][0] == {"id": "org.cloudfoundry.node", "uri": "/tmp/node"}
    assert data["groups"][1]["buildpacks"][1] == {"id": "org.cloudfoundry.yarn", "version": "0.0.3"}
    assert data["stack"] == {"id": "org.cloudfoundry.stacks.cflinuxfs3", "build-image": "b", "run-image": "r"}


def test_stack_is_omitted_when_not_set() -> None:
    data = tomllib.loads(to_toml(_builder_descriptor()))
    assert "stack" not in data


def test_order_written_as_groups_of_buildpacks(tmp_path: Path) -> None:
    """order.toml is a list of groups of buildpacks."""
    order = Order(groups=[Group(buildpacks=[BuildpackInfo(id="sample.buildpack", version="0.0.1")])])
    path = write_descriptor(order, tmp_path / "inputs" / "order.toml")

    assert load_toml(path) == {"groups": [{"buildpacks": [{"id": "sample.buildpack", "version": "0.0.1"}]}]}


def test_build_plan_keeps_unknown_keys(tmp_path: Path) -> None:
    """Plan entries keep keys the harness does not know about."""
    path = tmp_path / "plan.toml"
    path.write_text(
        '[node]\nversion = "10.x"\nprovided = true\n[node.metadata]\nlaunch = true\n'
    )

    plan = read_build_plan(path)

    assert plan["node"].version == "10.x"
    assert plan["node"].metadata == {"launch": True}
    assert plan["node"].model_extra == {"provided": True}

    rewritten = tmp_path / "rewritten.toml"
    write_descriptor(plan, rewritten)
    assert load_toml(rewritten) == load_toml(path)


def test_empty_plan_is_an_empty_mapping(tmp_path: Path) -> None:
    path = tmp_path / "plan.toml"
    path.write_text("")
    assert read_build_plan(path) == {}


def test_missing_required_descriptor_fails(tmp_path: Path) -> None:
    """A missing required file raises with its path."""
    with pytest.raises(DescriptorError, match="not found") as excinfo:
        read_descriptor(tmp_path / "group.toml", Group)
    assert excinfo.value.path == str(tmp_path / "group.toml")


def test_missing_optional_descriptor_is_none(tmp_path: Path) -> None:
    """A missing optional file reads as None."""
    assert read_descriptor(tmp_path / "launch.toml", LaunchMetadata, required=False) is None
    assert read_build_plan(tmp_path / "plan.toml", required=False) is None


def test_malformed_toml_fails_even_when_optional(tmp_path: Path) -> None:
    """Bad TOML is an error even for optional files."""
    path = tmp_path / "launch.toml"
    path.write_text("[[processes]\ntype = ")

    with pytest.raises(DescriptorError, match="malformed"):
        read_descriptor(path, LaunchMetadata, required=False)


def test_wrong_shape_fails_validation(tmp_path: Path) -> None:
    """Well-formed TOML with the wrong shape fails validation."""
    path = tmp_path / "group.toml"
    path.write_text('buildpacks = "not-a-list"\n')

    with pytest.raises(DescriptorError, match="invalid Group"):
        read_descriptor(path, Group)


def test_non_table_document_is_a_descriptor_error() -> None:
    with pytest.raises(DescriptorError, match="table"):
        to_toml([Group()])
