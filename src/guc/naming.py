"""Collision-free, deterministic identifiers for prims, materials and files."""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Hashable, Iterable
from pathlib import PurePosixPath

MATERIALS_NAMESPACE = "materials"
FILES_NAMESPACE = "files"
VARIANTS_NAMESPACE = "variants"

# Type names MaterialX refuses as element names.
MTLX_TYPE_NAMES: frozenset[str] = frozenset(
    {
        "integer",
        "boolean",
        "float",
        "color3",
        "color4",
        "vector2",
        "vector3",
        "vector4",
        "matrix33",
        "matrix44",
        "string",
        "filename",
        "geomname",
        "integerarray",
        "floatarray",
        "color3array",
        "color4array",
        "vector2array",
        "vector3array",
        "vector4array",
        "stringarray",
        "geomnamearray",
        "color",
        "shader",
        "material",
    }
)

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_]")
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def make_valid_identifier(label: str | None, default: str = "prim") -> str:
    """Map ``label`` onto ``[A-Za-z_][A-Za-z0-9_]*``.

    Invalid characters become ``_``, a leading digit gets a ``_`` prefix and an
    empty label is replaced by ``default``.
    """
    identifier = _INVALID_CHARS.sub("_", label or "")
    if not identifier:
        identifier = default
    if identifier[0].isdigit():
        identifier = "_" + identifier
    return identifier


class NameRegistry:
    """Issued identifiers per namespace for one conversion run.

    Collisions get ``_1``, ``_2``, ... in registration order, so callers that
    register in glTF declaration order get reproducible names.
    """

    def __init__(self) -> None:
        self._issued: dict[Hashable, set[str]] = defaultdict(set)

    def reserve(self, namespace: Hashable, names: Iterable[str]) -> None:
        """Mark ``names`` as taken without issuing them."""
        self._issued[namespace].update(names)

    def issued(self, namespace: Hashable) -> frozenset[str]:
        return frozenset(self._issued.get(namespace, ()))

    def make_unique_name(
        self, namespace: Hashable, label: str | None, default: str = "prim"
    ) -> str:
        base = make_valid_identifier(label, default)
        taken = self._issued[namespace]
        candidate = base
        suffix = 0
        while candidate in taken:
            suffix += 1
            candidate = f"{base}_{suffix}"
        taken.add(candidate)
        return candidate


def make_material_name(registry: NameRegistry, label: str | None) -> str:
    """Material names never start with ``_`` and never shadow a MaterialX type name."""
    if MTLX_TYPE_NAMES - registry.issued(MATERIALS_NAMESPACE):
        registry.reserve(MATERIALS_NAMESPACE, MTLX_TYPE_NAMES)
    base = make_valid_identifier(label, "mat")
    if base.startswith("_"):
        base = "mat"
    return registry.make_unique_name(MATERIALS_NAMESPACE, base, "mat")


def make_file_name(registry: NameRegistry, label: str | None, extension: str) -> str:
    """Unique file name built from ``label`` with any extension it had replaced."""
    stem = PurePosixPath(label).stem if label else ""
    stem = registry.make_unique_name(FILES_NAMESPACE, stem, "img")
    return f"{stem}{extension}"


def st_set_name(index: int) -> str:
    """Primvar name of texture coordinate set ``index``."""
    return "st" if index == 0 else f"st{index}"
