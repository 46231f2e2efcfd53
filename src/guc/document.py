"""glTF loading via pygltflib, structural checks and accessor decoding."""

from __future__ import annotations

import base64
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, TypeVar
from urllib.parse import unquote

import numpy as np
import pygltflib
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from guc.errors import InputError
from guc.warning_policy import WarningPolicy, emit_warning

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(
    {
        "KHR_draco_mesh_compression",
        "KHR_lights_punctual",
        "KHR_materials_clearcoat",
        "KHR_materials_emissive_strength",
        "KHR_materials_ior",
        "KHR_materials_pbrSpecularGlossiness",
        "KHR_materials_sheen",
        "KHR_materials_specular",
        "KHR_materials_transmission",
        "KHR_materials_variants",
        "KHR_materials_volume",
        "KHR_mesh_quantization",
        "KHR_texture_transform",
    }
)

COMPONENT_DTYPES: dict[int, str] = {
    pygltflib.BYTE: "<i1",
    pygltflib.UNSIGNED_BYTE: "<u1",
    pygltflib.SHORT: "<i2",
    pygltflib.UNSIGNED_SHORT: "<u2",
    pygltflib.UNSIGNED_INT: "<u4",
    pygltflib.FLOAT: "<f4",
}

TYPE_WIDTHS: dict[str, int] = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}

_NORMALIZE_DIVISORS: dict[str, float] = {
    "<i1": 127.0,
    "<u1": 255.0,
    "<i2": 32767.0,
    "<u2": 65535.0,
}


# -- extension blocks ---------------------------------------------------------


class ExtensionModel(BaseModel):
    """Base for typed views over raw glTF extension dictionaries."""

    model_config = ConfigDict(extra="ignore")


class LightSpot(ExtensionModel):
    innerConeAngle: float = 0.0
    outerConeAngle: float = math.pi / 4.0


class PunctualLight(ExtensionModel):
    type: Literal["directional", "point", "spot"]
    name: str | None = None
    color: tuple[float, float, float] = (1.0, 1.0, 1.0)
    intensity: float = 1.0
    range: float | None = None
    spot: LightSpot | None = None


class LightsPunctual(ExtensionModel):
    lights: list[PunctualLight] = Field(default_factory=list)


class NodeLight(ExtensionModel):
    light: int


class MaterialVariant(ExtensionModel):
    name: str = ""


class MaterialVariants(ExtensionModel):
    variants: list[MaterialVariant] = Field(default_factory=list)


class VariantMapping(ExtensionModel):
    material: int
    variants: list[int] = Field(default_factory=list)


class PrimitiveVariants(ExtensionModel):
    mappings: list[VariantMapping] = Field(default_factory=list)


class TextureTransform(ExtensionModel):
    offset: tuple[float, float] = (0.0, 0.0)
    rotation: float = 0.0
    scale: tuple[float, float] = (1.0, 1.0)
    texCoord: int | None = None


class DracoCompression(ExtensionModel):
    bufferView: int
    attributes: dict[str, int] = Field(default_factory=dict)


M = TypeVar("M", bound=ExtensionModel)


def parse_extension(
    extensions: dict[str, Any] | None,
    name: str,
    model: type[M],
    *,
    policy: WarningPolicy | None = None,
    entity: str | None = None,
) -> M | None:
    """Return the typed extension block ``name`` or None when absent or malformed."""
    if not extensions or name not in extensions:
        return None
    try:
        return model.model_validate(extensions[name])
    except PydanticValidationError as e:
        message = f"malformed {name} block ignored ({e.error_count()} errors)"
        emit_warning("W05", message, policy=policy, entity=entity)
        return None


# -- document -----------------------------------------------------------------


@dataclass
class SourceDocument:
    """A parsed glTF asset plus lazily loaded buffer contents.

    The wrapped ``pygltflib.GLTF2`` is treated as read-only.
    """

    gltf: pygltflib.GLTF2
    path: Path
    policy: WarningPolicy | None = None
    _buffers: dict[int, bytes] = field(default_factory=dict, repr=False)

    @property
    def base_dir(self) -> Path:
        return self.path.parent

    @property
    def name(self) -> str:
        return self.path.stem

    def element(self, collection: str, index: int | None) -> Any:
        """Look up ``gltf.<collection>[index]``, raising ``InputError`` when out of range."""
        items = getattr(self.gltf, collection) or []
        if index is None or not 0 <= index < len(items):
            raise InputError(f"Invalid {collection} index {index!r} (have {len(items)})")
        return items[index]

    def has_element(self, collection: str, index: int | None) -> bool:
        items = getattr(self.gltf, collection) or []
        return index is not None and 0 <= index < len(items)

    def root_extension(self, name: str, model: type[M]) -> M | None:
        return parse_extension(
            self.gltf.extensions, name, model, policy=self.policy, entity="asset"
        )

    def scene_roots(self) -> list[tuple[str | None, list[int]]]:
        """Return ``(scene name, root node indices)`` for every scene.

        Assets without scenes expose every node that is nobody's child.
        """
        scenes = self.gltf.scenes or []
        if scenes:
            return [(scene.name, list(scene.nodes or [])) for scene in scenes]
        children = {c for node in self.gltf.nodes or [] for c in node.children or []}
        roots = [i for i in range(len(self.gltf.nodes or [])) if i not in children]
        return [(None, roots)]

    # -- raw bytes --

    def buffer_bytes(self, index: int) -> bytes:
        if index in self._buffers:
            return self._buffers[index]
        buffer = self.element("buffers", index)
        uri = buffer.uri
        if uri is None:
            blob = self.gltf.binary_blob()
            if index != 0 or blob is None:
                raise InputError(f"Buffer {index} has no uri and no GLB binary chunk")
            data = bytes(blob)
        elif uri.startswith("data:"):
            data = decode_data_uri(uri)
        else:
            buffer_path = self.base_dir / unquote(uri)
            try:
                data = buffer_path.read_bytes()
            except OSError as e:
                raise InputError(f"Cannot read buffer {index} ({buffer_path}): {e}") from e
        if buffer.byteLength is not None and len(data) < buffer.byteLength:
            raise InputError(
                f"Buffer {index} is truncated ({len(data)} < {buffer.byteLength} bytes)"
            )
        self._buffers[index] = data
        return data

    def buffer_view_bytes(self, index: int) -> bytes:
        view = self.element("bufferViews", index)
        data = self.buffer_bytes(view.buffer)
        start = view.byteOffset or 0
        end = start + view.byteLength
        if end > len(data):
            raise InputError(f"bufferView {index} exceeds its buffer")
        return data[start:end]

    # -- accessors --

    def read_accessor(self, index: int) -> np.ndarray:
        """Decode an accessor to numpy, applying sparse substitution and normalization.

        SCALAR accessors come back as ``(count,)``, everything else as ``(count, width)``.
        """
        accessor = self.element("accessors", index)
        dtype = COMPONENT_DTYPES.get(accessor.componentType)
        width = TYPE_WIDTHS.get(accessor.type)
        if dtype is None or width is None:
            raise InputError(
                f"Accessor {index} has unsupported layout {accessor.type}/{accessor.componentType}"
            )
        count = accessor.count or 0

        if accessor.bufferView is not None:
            values = self._read_view(
                accessor.bufferView, accessor.byteOffset or 0, dtype, count, width, strided=True
            )
        else:
            values = np.zeros((count, width), dtype=dtype)

        sparse = accessor.sparse
        if sparse is not None and sparse.count:
            index_dtype = COMPONENT_DTYPES.get(sparse.indices.componentType)
            if index_dtype is None:
                raise InputError(f"Accessor {index} has invalid sparse index type")
            targets = self._read_view(
                sparse.indices.bufferView,
                sparse.indices.byteOffset or 0,
                index_dtype,
                sparse.count,
                1,
            ).reshape(-1)
            replacements = self._read_view(
                sparse.values.bufferView, sparse.values.byteOffset or 0, dtype, sparse.count, width
            )
            if targets.size and int(targets.max()) >= count:
                raise InputError(f"Accessor {index} has sparse indices out of range")
            values[targets.astype(np.int64)] = replacements

        if accessor.normalized and dtype in _NORMALIZE_DIVISORS:
            values = np.maximum(values.astype(np.float32) / _NORMALIZE_DIVISORS[dtype], -1.0)

        if width == 1:
            return values.reshape(count)
        return values

    def _read_view(
        self,
        view_index: int,
        byte_offset: int,
        dtype: str,
        count: int,
        width: int,
        *,
        strided: bool = False,
    ) -> np.ndarray:
        view = self.element("bufferViews", view_index)
        data = self.buffer_bytes(view.buffer)
        itemsize = np.dtype(dtype).itemsize
        element_size = itemsize * width
        stride = (view.byteStride or element_size) if strided else element_size
        start = (view.byteOffset or 0) + byte_offset
        if count == 0:
            return np.zeros((0, width), dtype=dtype)
        end = start + stride * (count - 1) + element_size
        if end > (view.byteOffset or 0) + view.byteLength or end > len(data):
            raise InputError(f"bufferView {view_index} is too small for {count} elements")
        array = np.ndarray(
            (count, width), dtype=dtype, buffer=data, offset=start, strides=(stride, itemsize)
        )
        return array.copy()


def decode_data_uri(uri: str) -> bytes:
    """Decode a ``data:`` URI (base64 or percent-encoded payload)."""
    header, _, payload = uri.partition(",")
    try:
        if header.endswith(";base64"):
            return base64.b64decode(payload)
        return unquote(payload).encode("latin-1")
    except (ValueError, UnicodeEncodeError) as e:
        raise InputError(f"Malformed data URI: {e}") from e


def load_document(path: Path, *, policy: WarningPolicy | None = None) -> SourceDocument:
    """Parse a ``.gltf``/``.glb`` file and check what the converter relies on."""
    path = Path(path)
    if not path.is_file():
        raise InputError(f"Input file not found: {path}")
    if path.suffix.lower() not in (".gltf", ".glb"):
        raise InputError(f"Unsupported input extension {path.suffix!r} (expected .gltf or .glb)")

    try:
        gltf = pygltflib.GLTF2().load(str(path))
    except Exception as e:
        raise InputError(f"Cannot parse glTF {path}: {e}") from e
    if gltf is None:
        raise InputError(f"Cannot parse glTF {path}")

    version = getattr(gltf.asset, "version", None) or ""
    if not version.startswith("2"):
        raise InputError(f"Unsupported glTF version {version!r}")

    for name in gltf.extensionsRequired or []:
        if name not in SUPPORTED_EXTENSIONS:
            raise InputError(f"Required extension {name} is not supported")
    for name in gltf.extensionsUsed or []:
        if name not in SUPPORTED_EXTENSIONS:
            emit_warning(
                "W04", f"extension {name} is not supported and will be ignored", policy=policy
            )
        elif name == "KHR_materials_pbrSpecularGlossiness":
            emit_warning(
                "W04",
                "specular-glossiness materials are translated as metallic-roughness",
                policy=policy,
            )

    logger.debug(
        "Loaded %s: %d nodes, %d meshes, %d materials",
        path,
        len(gltf.nodes or []),
        len(gltf.meshes or []),
        len(gltf.materials or []),
    )
    return SourceDocument(gltf=gltf, path=path, policy=policy)
