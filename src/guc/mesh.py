"""Mesh primitive normalization: decoding, validation, welding, merging, tangents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from itertools import count

import DracoPy
import numpy as np
import pygltflib

from guc.document import (
    DracoCompression,
    PrimitiveVariants,
    SourceDocument,
    TextureTransform,
    parse_extension,
)
from guc.errors import InputError, UnsupportedFeatureError
from guc.warning_policy import WarningPolicy, emit_warning

logger = logging.getLogger(__name__)

MODE_NAMES: dict[int, str] = {
    pygltflib.POINTS: "POINTS",
    pygltflib.LINES: "LINES",
    pygltflib.LINE_LOOP: "LINE_LOOP",
    pygltflib.LINE_STRIP: "LINE_STRIP",
    pygltflib.TRIANGLES: "TRIANGLES",
    pygltflib.TRIANGLE_STRIP: "TRIANGLE_STRIP",
    pygltflib.TRIANGLE_FAN: "TRIANGLE_FAN",
}

_READ_SEMANTICS = ("POSITION", "NORMAL", "TANGENT", "COLOR_0")


@dataclass
class DrawUnit:
    """One triangle-list primitive buffer, ready to become a mesh prim."""

    points: np.ndarray  # (N, 3) float32
    indices: np.ndarray  # (M,) int32, M % 3 == 0
    normals: np.ndarray | None = None  # (N, 3) float32
    tangents: np.ndarray | None = None  # (N, 4) float32, w = handedness
    texcoords: list[np.ndarray] = field(default_factory=list)  # (N, 2) float32, glTF orientation
    colors: np.ndarray | None = None  # (N, 3) float32
    opacities: np.ndarray | None = None  # (N,) float32
    material: int | None = None
    variant_materials: tuple[tuple[int, int], ...] = ()  # (variant, material)
    source_primitives: list[int] = field(default_factory=list)

    @property
    def vertex_count(self) -> int:
        return len(self.points)

    @property
    def face_count(self) -> int:
        return len(self.indices) // 3

    @property
    def face_vertex_counts(self) -> np.ndarray:
        return np.full(self.face_count, 3, dtype=np.int32)

    @property
    def schema(self) -> tuple:
        """Attribute layout; only units with equal schemas are merged."""
        return (
            self.normals is not None,
            self.tangents is not None,
            len(self.texcoords),
            self.colors is not None,
            self.opacities is not None,
        )


@dataclass
class CanonicalMesh:
    """Processed form of one glTF mesh."""

    mesh_index: int
    name: str | None
    units: list[DrawUnit]


def process_mesh(
    doc: SourceDocument,
    mesh_index: int,
    *,
    weighting: str = "angle",
    policy: WarningPolicy | None = None,
) -> CanonicalMesh:
    """Turn every usable primitive of a glTF mesh into draw units.

    Pipeline per primitive: decode -> validate -> weld -> flat normals if
    missing -> tangents if a normal map needs them. Identical primitives are
    dropped and compatible ones merged. Unusable primitives are skipped with a
    diagnostic.
    """
    mesh = doc.element("meshes", mesh_index)
    entity = f"mesh {mesh.name or mesh_index!r}"

    units: list[DrawUnit] = []
    seen: set[tuple] = set()
    for prim_index, prim in enumerate(mesh.primitives or []):
        key = _primitive_key(prim)
        if key in seen:
            logger.debug("%s: primitive %d duplicates an earlier one", entity, prim_index)
            continue
        seen.add(key)
        try:
            unit = _process_primitive(doc, prim, prim_index, weighting, policy, entity)
        except UnsupportedFeatureError as e:
            emit_warning(
                "W01", f"primitive {prim_index} skipped: {e}", policy=policy, entity=entity
            )
            continue
        if unit is not None:
            units.append(unit)

    return CanonicalMesh(mesh_index=mesh_index, name=mesh.name, units=merge_units(units))


# -- per primitive ------------------------------------------------------------


def _attribute_map(prim: pygltflib.Primitive) -> dict[str, int]:
    attributes = prim.attributes
    if attributes is None:
        return {}
    return {name: value for name, value in vars(attributes).items() if isinstance(value, int)}


def _primitive_key(prim: pygltflib.Primitive) -> tuple:
    draco = (prim.extensions or {}).get("KHR_draco_mesh_compression") or {}
    variants = (prim.extensions or {}).get("KHR_materials_variants") or {}
    return (
        prim.mode,
        prim.indices,
        tuple(sorted(_attribute_map(prim).items())),
        prim.material,
        draco.get("bufferView"),
        repr(variants),
    )


def _process_primitive(
    doc: SourceDocument,
    prim: pygltflib.Primitive,
    prim_index: int,
    weighting: str,
    policy: WarningPolicy | None,
    entity: str,
) -> DrawUnit | None:
    mode = pygltflib.TRIANGLES if prim.mode is None else prim.mode
    if mode != pygltflib.TRIANGLES:
        raise UnsupportedFeatureError(
            f"topology {MODE_NAMES.get(mode, mode)} is not a triangle list"
        )

    attributes = _attribute_map(prim)
    arrays: dict[str, np.ndarray] = {}
    indices: np.ndarray | None = None

    draco = parse_extension(
        prim.extensions,
        "KHR_draco_mesh_compression",
        DracoCompression,
        policy=policy,
        entity=entity,
    )
    if draco is not None:
        try:
            arrays, indices = decode_draco(doc, draco)
        except UnsupportedFeatureError as e:
            emit_warning(
                "W02", f"primitive {prim_index} skipped: {e}", policy=policy, entity=entity
            )
            return None
        for semantic in draco.attributes:
            if semantic not in arrays:
                emit_warning(
                    "W04", f"draco attribute {semantic} cannot be decoded and is dropped",
                    policy=policy, entity=entity,
                )

    for semantic, accessor in attributes.items():
        if semantic in arrays or (draco is not None and semantic in draco.attributes):
            continue
        if semantic in _READ_SEMANTICS or semantic.startswith("TEXCOORD_"):
            arrays[semantic] = doc.read_accessor(accessor)

    if "POSITION" not in arrays:
        raise UnsupportedFeatureError("no POSITION attribute")
    points = np.asarray(arrays["POSITION"], dtype=np.float32).reshape(-1, 3)
    vertex_count = len(points)

    for semantic, values in arrays.items():
        if len(values) != vertex_count:
            raise UnsupportedFeatureError(
                f"attribute {semantic} has {len(values)} entries, POSITION has {vertex_count}"
            )

    if indices is None:
        if prim.indices is not None:
            indices = doc.read_accessor(prim.indices)
        else:
            indices = np.arange(vertex_count)
    indices = np.asarray(indices).reshape(-1).astype(np.int64)
    if len(indices) == 0:
        raise UnsupportedFeatureError("no triangles")
    if len(indices) % 3 != 0:
        raise UnsupportedFeatureError(f"index count {len(indices)} is not a multiple of 3")
    if indices.min() < 0 or indices.max() >= vertex_count:
        raise UnsupportedFeatureError("indices reference missing vertices")

    unit = DrawUnit(points=points, indices=indices.astype(np.int32), source_primitives=[prim_index])
    if "NORMAL" in arrays:
        unit.normals = np.asarray(arrays["NORMAL"], dtype=np.float32).reshape(-1, 3)
        if "TANGENT" in arrays and np.shape(arrays["TANGENT"])[-1] == 4:
            unit.tangents = np.asarray(arrays["TANGENT"], dtype=np.float32)
    for set_index in count():
        uv = arrays.get(f"TEXCOORD_{set_index}")
        if uv is None:
            break
        unit.texcoords.append(np.asarray(uv, dtype=np.float32).reshape(-1, 2))
    if "COLOR_0" in arrays:
        colors = np.asarray(arrays["COLOR_0"], dtype=np.float32)
        unit.colors = colors[:, :3]
        if colors.shape[1] == 4:
            unit.opacities = colors[:, 3].copy()

    unit.material = _checked_material(doc, prim.material, policy, entity)
    unit.variant_materials = _variant_materials(doc, prim, policy, entity)

    unit = weld_vertices(unit)
    if unit.normals is None:
        unit = apply_flat_normals(unit)

    if unit.tangents is None and unit.normals is not None:
        uv_set = _normal_map_uv_set(doc, [unit.material, *(m for _, m in unit.variant_materials)])
        if uv_set is not None and uv_set < len(unit.texcoords):
            remap, tangents, new_indices = generate_tangents(
                unit.points, unit.normals, unit.texcoords[uv_set], unit.indices, weighting=weighting
            )
            unit = _remap(unit, remap, new_indices)
            unit.tangents = tangents
        elif uv_set is not None:
            logger.debug(
                "%s: primitive %d has no TEXCOORD_%d, no tangents", entity, prim_index, uv_set
            )
    return unit


def _checked_material(
    doc: SourceDocument, index: int | None, policy: WarningPolicy | None, entity: str
) -> int | None:
    if index is None or doc.has_element("materials", index):
        return index
    emit_warning("W05", f"material index {index} does not exist", policy=policy, entity=entity)
    return None


def _variant_materials(
    doc: SourceDocument, prim: pygltflib.Primitive, policy: WarningPolicy | None, entity: str
) -> tuple[tuple[int, int], ...]:
    ext = parse_extension(
        prim.extensions, "KHR_materials_variants", PrimitiveVariants, policy=policy, entity=entity
    )
    if ext is None:
        return ()
    pairs: dict[int, int] = {}
    for mapping in ext.mappings:
        material = _checked_material(doc, mapping.material, policy, entity)
        if material is None:
            continue
        for variant in mapping.variants:
            pairs.setdefault(variant, material)
    return tuple(sorted(pairs.items()))


def _normal_map_uv_set(doc: SourceDocument, materials: list[int | None]) -> int | None:
    """UV set used by the first normal map among ``materials``."""
    for index in materials:
        if index is None or not doc.has_element("materials", index):
            continue
        info = doc.gltf.materials[index].normalTexture
        if info is None or not doc.has_element("textures", info.index):
            continue
        transform = parse_extension(info.extensions, "KHR_texture_transform", TextureTransform)
        if transform is not None and transform.texCoord is not None:
            return transform.texCoord
        return info.texCoord or 0
    return None


# -- draco --------------------------------------------------------------------


def decode_draco(
    doc: SourceDocument, ext: DracoCompression
) -> tuple[dict[str, np.ndarray], np.ndarray]:
    """Decode a draco-compressed primitive into attribute arrays and indices."""
    try:
        data = doc.buffer_view_bytes(ext.bufferView)
    except InputError as e:
        raise UnsupportedFeatureError(f"draco buffer unavailable: {e}") from e
    try:
        decoded = DracoPy.decode(data)
    except Exception as e:
        raise UnsupportedFeatureError(f"draco decoding failed: {e}") from e

    faces = getattr(decoded, "faces", None)
    if faces is None or len(faces) == 0:
        raise UnsupportedFeatureError("draco point clouds are not supported")

    points = np.asarray(decoded.points, dtype=np.float32).reshape(-1, 3)
    arrays: dict[str, np.ndarray] = {"POSITION": points}
    sources = {
        "NORMAL": ("normals", 3),
        "TEXCOORD_0": ("tex_coord", 2),
        "COLOR_0": ("colors", None),
    }
    for semantic in ext.attributes:
        if semantic not in sources:
            continue
        attribute, width = sources[semantic]
        values = getattr(decoded, attribute, None)
        if values is None or len(values) == 0:
            continue
        values = np.asarray(values)
        if width is not None:
            values = values.reshape(-1, width)
        if np.issubdtype(values.dtype, np.integer):
            values = values.astype(np.float32) / float(np.iinfo(values.dtype).max)
        arrays[semantic] = values.astype(np.float32)
    return arrays, np.asarray(faces).reshape(-1)


# -- vertex operations --------------------------------------------------------


def _vertex_columns(unit: DrawUnit) -> list[np.ndarray]:
    columns = [unit.points]
    for optional in (unit.normals, unit.tangents, unit.colors):
        if optional is not None:
            columns.append(optional)
    columns.extend(unit.texcoords)
    if unit.opacities is not None:
        columns.append(unit.opacities.reshape(-1, 1))
    return columns


def _remap(unit: DrawUnit, remap: np.ndarray, indices: np.ndarray) -> DrawUnit:
    """Rebuild ``unit`` so output vertex ``i`` is source vertex ``remap[i]``."""

    def take(values: np.ndarray | None) -> np.ndarray | None:
        return None if values is None else values[remap]

    return replace(
        unit,
        points=unit.points[remap],
        indices=np.asarray(indices, dtype=np.int32),
        normals=take(unit.normals),
        tangents=take(unit.tangents),
        texcoords=[uv[remap] for uv in unit.texcoords],
        colors=take(unit.colors),
        opacities=take(unit.opacities),
    )


def weld_vertices(unit: DrawUnit) -> DrawUnit:
    """Merge vertices whose attributes are all identical, keeping first-occurrence order."""
    columns = [np.asarray(c, dtype=np.float64).reshape(len(c), -1) for c in _vertex_columns(unit)]
    stacked = np.hstack(columns)
    _, first, inverse = np.unique(stacked, axis=0, return_index=True, return_inverse=True)
    if len(first) == unit.vertex_count:
        return unit
    inverse = np.asarray(inverse).reshape(-1)
    order = np.argsort(first, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(len(order))
    return _remap(unit, first[order], rank[inverse][unit.indices])


def apply_flat_normals(unit: DrawUnit) -> DrawUnit:
    """Give every triangle its own vertices carrying the face normal."""
    corners = unit.indices.astype(np.int64)
    flat = _remap(unit, corners, np.arange(len(corners), dtype=np.int32))
    tris = flat.points.reshape(-1, 3, 3).astype(np.float64)
    face_normals = _normalize(np.cross(tris[:, 1] - tris[:, 0], tris[:, 2] - tris[:, 0]))
    flat.normals = np.repeat(face_normals, 3, axis=0).astype(np.float32)
    return flat


def merge_units(units: list[DrawUnit]) -> list[DrawUnit]:
    """Concatenate units sharing material, variant mapping, schema and vertex/index counts."""
    groups: dict[tuple, list[DrawUnit]] = {}
    for unit in units:
        key = (
            unit.material,
            unit.variant_materials,
            unit.schema,
            unit.vertex_count,
            len(unit.indices),
        )
        groups.setdefault(key, []).append(unit)
    return [group[0] if len(group) == 1 else _concatenate(group) for group in groups.values()]


def _concatenate(group: list[DrawUnit]) -> DrawUnit:
    offsets = np.cumsum([0] + [u.vertex_count for u in group[:-1]])

    def stack(values: list[np.ndarray | None]) -> np.ndarray | None:
        return None if values[0] is None else np.concatenate(values)

    head = group[0]
    return DrawUnit(
        points=np.concatenate([u.points for u in group]),
        indices=np.concatenate([u.indices + off for u, off in zip(group, offsets)]).astype(
            np.int32
        ),
        normals=stack([u.normals for u in group]),
        tangents=stack([u.tangents for u in group]),
        texcoords=[
            np.concatenate([u.texcoords[i] for u in group]) for i in range(len(head.texcoords))
        ],
        colors=stack([u.colors for u in group]),
        opacities=stack([u.opacities for u in group]),
        material=head.material,
        variant_materials=head.variant_materials,
        source_primitives=[p for u in group for p in u.source_primitives],
    )


# -- tangent space ------------------------------------------------------------


def _normalize(vectors: np.ndarray) -> np.ndarray:
    length = np.linalg.norm(vectors, axis=-1, keepdims=True)
    return np.divide(vectors, length, out=np.zeros_like(vectors), where=length > 0.0)


def _perpendicular(normals: np.ndarray) -> np.ndarray:
    axis = np.where(np.abs(normals[:, :1]) < 0.9, [[1.0, 0.0, 0.0]], [[0.0, 1.0, 0.0]])
    return _normalize(np.cross(axis, normals))


def generate_tangents(
    positions: np.ndarray,
    normals: np.ndarray,
    uvs: np.ndarray,
    indices: np.ndarray,
    *,
    weighting: str = "angle",
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Compute per-vertex tangents with handedness for a triangle list.

    Each corner contributes its triangle's UV-gradient tangent projected onto
    the corner normal's plane, weighted by corner angle, triangle area or 1.
    Vertices shared by corners of opposite handedness (mirrored UVs) are split.
    The result depends only on the arguments.

    Returns:
        ``(remap, tangents, indices)``: output vertex ``i`` copies source vertex
        ``remap[i]``, ``tangents`` is ``(K, 4)`` float32 with ``w = ±1`` and
        ``indices`` is the rewritten triangle list.
    """
    positions = np.asarray(positions, dtype=np.float64)
    normals = np.asarray(normals, dtype=np.float64)
    uvs = np.asarray(uvs, dtype=np.float64)
    tris = np.asarray(indices, dtype=np.int64).reshape(-1, 3)

    p = positions[tris]  # (F, 3, 3)
    t = uvs[tris]  # (F, 3, 2)
    corner_normals = _normalize(normals[tris])

    e1 = p[:, 1] - p[:, 0]
    e2 = p[:, 2] - p[:, 0]
    d1 = t[:, 1] - t[:, 0]
    d2 = t[:, 2] - t[:, 0]
    det = d1[:, 0] * d2[:, 1] - d2[:, 0] * d1[:, 1]
    orientation = np.where(det < 0.0, -1.0, 1.0)[:, None]
    face_tangent = (e1 * d2[:, 1:2] - e2 * d1[:, 1:2]) * orientation
    face_bitangent = (e2 * d1[:, 0:1] - e1 * d2[:, 0:1]) * orientation

    if weighting == "angle":
        to_next = _normalize(p[:, [1, 2, 0]] - p)
        to_prev = _normalize(p[:, [2, 0, 1]] - p)
        weights = np.arccos(np.clip(np.sum(to_next * to_prev, axis=2), -1.0, 1.0))
    elif weighting == "area":
        area = 0.5 * np.linalg.norm(np.cross(e1, e2), axis=1)
        weights = np.repeat(area[:, None], 3, axis=1)
    elif weighting == "uniform":
        weights = np.ones(tris.shape)
    else:
        raise ValueError(f"Unknown tangent weighting: {weighting!r}")

    face_tangent = face_tangent[:, None, :]
    along_normal = np.sum(corner_normals * face_tangent, axis=2, keepdims=True)
    projected = face_tangent - corner_normals * along_normal
    projected = _normalize(projected)
    handedness = np.sum(np.cross(corner_normals, projected) * face_bitangent[:, None, :], axis=2)
    negative = handedness < 0.0

    keys = (tris * 2 + negative).reshape(-1)
    unique_keys, inverse = np.unique(keys, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    remap = unique_keys // 2
    signs = np.where(unique_keys % 2 == 1, -1.0, 1.0)

    accumulated = np.zeros((len(unique_keys), 3))
    np.add.at(accumulated, inverse, (projected * weights[..., None]).reshape(-1, 3))

    vertex_normals = _normalize(normals[remap])
    accumulated -= vertex_normals * np.sum(vertex_normals * accumulated, axis=1, keepdims=True)
    length = np.linalg.norm(accumulated, axis=1)
    degenerate = length < 1e-12
    accumulated[~degenerate] /= length[~degenerate, None]
    if degenerate.any():
        accumulated[degenerate] = _perpendicular(vertex_normals[degenerate])

    tangents = np.concatenate([accumulated, signs[:, None]], axis=1).astype(np.float32)
    return remap, tangents, inverse.astype(np.int32)
