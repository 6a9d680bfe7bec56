"""
TOML encoding and decoding of interchange descriptors.

The lifecycle and pack exchange data through TOML files at fixed names.
Writing goes through tomli_w, reading through tomllib; decoded data is
validated against the models in cnbdagger.models.

Missing files:
- required descriptors raise DescriptorError
- optional descriptors (per-layer metadata, launch.toml) return None
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar, Union

import tomli_w
from pydantic import BaseModel, TypeAdapter, ValidationError

from cnbdagger.exceptions import DescriptorError
from cnbdagger.models import BuildPlan

logger = logging.getLogger(__name__)

ORDER_FILE = "order.toml"
GROUP_FILE = "group.toml"
PLAN_FILE = "plan.toml"
LAUNCH_FILE = "launch.toml"
BUILDER_FILE = "builder.toml"
BUILDPACK_FILE = "buildpack.toml"

# Descriptors are read by an unprivileged user inside the lifecycle container
DESCRIPTOR_MODE = 0o644

PathLike = Union[str, Path]
M = TypeVar("M", bound=BaseModel)

_build_plan_adapter: TypeAdapter[BuildPlan] = TypeAdapter(BuildPlan)


def _plain(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(data, dict):
        return {str(k): _plain(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_plain(v) for v in data]
    return data


def to_toml(data: Any) -> str:
    """Serialize a model (or a mapping of models) to a TOML document."""
    plain = _plain(data)
    if not isinstance(plain, dict):
        raise DescriptorError(f"descriptor must encode to a table, got {type(plain).__name__}")
    try:
        return tomli_w.dumps(plain)
    except TypeError as exc:
        raise DescriptorError(f"descriptor is not TOML-encodable: {exc}") from exc


def write_descriptor(data: Any, path: PathLike) -> Path:
    """Write data as TOML to path, creating parent directories."""
    path = Path(path)
    document = to_toml(data)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(document, encoding="utf-8")
    path.chmod(DESCRIPTOR_MODE)
    logger.debug("Wrote descriptor %s (%d bytes)", path, len(document))
    return path


def load_toml(path: PathLike, *, required: bool = True) -> Optional[Dict[str, Any]]:
    """
    Read a TOML file into a dict.

    Returns None when the file is absent and not required.

    Raises:
        DescriptorError: If a required file is missing or any file fails to parse.
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        if not required:
            return None
        raise DescriptorError(f"required descriptor not found: {path}", path=str(path)) from exc
    except OSError as exc:
        raise DescriptorError(f"cannot read descriptor {path}: {exc}", path=str(path)) from exc

    try:
        return tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise DescriptorError(f"malformed descriptor {path}: {exc}", path=str(path)) from exc


def read_descriptor(path: PathLike, model: Type[M], *, required: bool = True) -> Optional[M]:
    """Read and validate a descriptor as the given model."""
    data = load_toml(path, required=required)
    if data is None:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise DescriptorError(
            f"invalid {model.__name__} in {path}: {exc}", path=str(path)
        ) from exc


def read_build_plan(path: PathLike, *, required: bool = True) -> Optional[BuildPlan]:
    """Read plan.toml: a table of dependency name -> plan entry."""
    data = load_toml(path, required=required)
    if data is None:
        return None
    try:
        return _build_plan_adapter.validate_python(data)
    except ValidationError as exc:
        raise DescriptorError(f"invalid build plan in {path}: {exc}", path=str(path)) from exc
