"""Conversion options and their YAML loading."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from guc.errors import ConfigError

GltfPbrImpl = Literal["runtime", "file", "flattened"]
TangentWeighting = Literal["angle", "area", "uniform"]


class ConversionOptions(BaseModel):
    """Flags controlling which representations are emitted and how."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    emit_mtlx: bool = False
    mtlx_as_usdshade: bool = False
    explicit_colorspace_transforms: bool = False
    gltf_pbr_impl: GltfPbrImpl = "runtime"
    hdstorm_compat: bool = False
    default_material_variant: int = Field(default=0, ge=0)
    single_file: bool = False
    tangent_weighting: TangentWeighting = "angle"

    @model_validator(mode="after")
    def _check_combinations(self) -> ConversionOptions:
        if self.mtlx_as_usdshade and self.gltf_pbr_impl == "flattened":
            raise ValueError("mtlx_as_usdshade cannot be combined with gltf_pbr_impl='flattened'")
        return self

    @property
    def explicit_transforms(self) -> bool:
        """Whether colorspace conversion is done with explicit nodes."""
        return self.explicit_colorspace_transforms or self.hdstorm_compat


def make_options(**values: Any) -> ConversionOptions:
    """Build options, turning validation failures into ``ConfigError``."""
    try:
        return ConversionOptions(**values)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid conversion options: {e}") from e


def load_options(path: Path, **overrides: Any) -> ConversionOptions:
    """Load options from a YAML mapping; ``overrides`` win over file values."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}") from e

    yml = YAML(typ="safe")
    yml.allow_duplicate_keys = False
    try:
        data = yml.load(text)
    except YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Top-level YAML value must be a mapping")

    data.update(overrides)
    return make_options(**data)
