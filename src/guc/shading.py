"""Shading graphs for both material representations.

``build_shading_graph`` walks one ``MaterialSpec`` and hands every material
input to a dialect, which emits either a UsdPreviewSurface network or a
MaterialX ``gltf_pbr`` node graph. Both dialects share the slot table, the
alpha rules and the texture-coordinate transform, so the two outputs agree on
constant inputs.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from guc.materials import (
    WRAP_CLAMP_TO_EDGE,
    WRAP_MIRRORED_REPEAT,
    AlphaMode,
    ConstantInput,
    MaterialSpec,
    SlotValue,
    TextureInput,
    TextureRef,
)
from guc.naming import NameRegistry, st_set_name
from guc.options import ConversionOptions

# Smallest positive float32; forces Storm onto its translucent path.
STORM_TRANSMISSION_SHIM = float(np.nextafter(np.float32(0.0), np.float32(1.0)))

NEAREST_FILTERS = frozenset({9728, 9984, 9986})

TYPE_WIDTHS: dict[str, int] = {
    "float": 1,
    "integer": 1,
    "boolean": 1,
    "vector2": 2,
    "color3": 3,
    "vector3": 3,
    "color4": 4,
    "vector4": 4,
}


class Representation(Enum):
    PREVIEW = "preview"
    MATERIALX = "materialx"


class SlotKind(Enum):
    FLOAT = "float"
    COLOR = "color"
    NORMAL = "normal"
    OCCLUSION = "occlusion"


@dataclass(frozen=True)
class Connection:
    node: str
    output: str = "out"


@dataclass
class NodeInput:
    type: str
    value: Any = None
    connection: Connection | None = None
    colorspace: str | None = None


@dataclass
class ShadingNode:
    name: str
    category: str
    type: str
    outputs: dict[str, str]
    nodedef: str | None = None
    inputs: dict[str, NodeInput] = field(default_factory=dict)

    def set(self, name: str, type: str, value: Any) -> NodeInput:
        self.inputs[name] = NodeInput(type, value=value)
        return self.inputs[name]

    def connect(self, name: str, type: str, source: Connection) -> NodeInput:
        self.inputs[name] = NodeInput(type, connection=source)
        return self.inputs[name]


@dataclass
class ShadingGraph:
    """Nodes of one material in creation order; ``surface`` names the shader node."""

    material_name: str
    representation: Representation
    nodes: dict[str, ShadingNode] = field(default_factory=dict)
    surface: str = ""
    _names: NameRegistry = field(default_factory=NameRegistry, repr=False)

    @property
    def surface_node(self) -> ShadingNode:
        return self.nodes[self.surface]

    def add_node(
        self,
        category: str,
        type: str,
        hint: str,
        *,
        outputs: dict[str, str] | None = None,
        nodedef: str | None = None,
    ) -> ShadingNode:
        name = self._names.make_unique_name("nodes", hint, "node")
        node = ShadingNode(name, category, type, outputs or {"out": type}, nodedef)
        self.nodes[name] = node
        return node

    def nodes_of(self, category: str) -> list[ShadingNode]:
        return [node for node in self.nodes.values() if node.category == category]


# -- colorspace transfer functions --------------------------------------------


def srgb_to_linear(value: float) -> float:
    if value <= 0.04045:
        return value / 12.92
    return ((value + 0.055) / 1.055) ** 2.4


def linear_to_srgb(value: float) -> float:
    if value <= 0.0031308:
        return value * 12.92
    return 1.055 * value ** (1.0 / 2.4) - 0.055


# -- slot table ---------------------------------------------------------------


@dataclass(frozen=True)
class _Slot:
    kind: SlotKind
    preview: str | None
    materialx: str | None

    def input_name(self, representation: Representation) -> str | None:
        return self.preview if representation is Representation.PREVIEW else self.materialx


BASE_COLOR = _Slot(SlotKind.COLOR, "diffuseColor", "base_color")
ALPHA = _Slot(SlotKind.FLOAT, "opacity", "alpha")
METALLIC = _Slot(SlotKind.FLOAT, "metallic", "metallic")
ROUGHNESS = _Slot(SlotKind.FLOAT, "roughness", "roughness")
EMISSIVE = _Slot(SlotKind.COLOR, "emissiveColor", "emissive")
NORMAL = _Slot(SlotKind.NORMAL, "normal", "normal")
OCCLUSION = _Slot(SlotKind.OCCLUSION, "occlusion", "occlusion")
CLEARCOAT = _Slot(SlotKind.FLOAT, "clearcoat", "clearcoat")
CLEARCOAT_ROUGHNESS = _Slot(SlotKind.FLOAT, "clearcoatRoughness", "clearcoat_roughness")
CLEARCOAT_NORMAL = _Slot(SlotKind.NORMAL, None, "clearcoat_normal")
TRANSMISSION = _Slot(SlotKind.FLOAT, None, "transmission")
THICKNESS = _Slot(SlotKind.FLOAT, None, "thickness")
ATTENUATION_COLOR = _Slot(SlotKind.COLOR, None, "attenuation_color")
ATTENUATION_DISTANCE = _Slot(SlotKind.FLOAT, None, "attenuation_distance")
IOR = _Slot(SlotKind.FLOAT, "ior", "ior")
SPECULAR = _Slot(SlotKind.FLOAT, None, "specular")
SPECULAR_COLOR = _Slot(SlotKind.COLOR, "specularColor", "specular_color")
SHEEN_COLOR = _Slot(SlotKind.COLOR, None, "sheen_color")
SHEEN_ROUGHNESS = _Slot(SlotKind.FLOAT, None, "sheen_roughness")


def _slot_values(spec: MaterialSpec) -> Iterator[tuple[_Slot, SlotValue | None]]:
    yield BASE_COLOR, spec.base_color
    yield METALLIC, spec.metallic
    yield ROUGHNESS, spec.roughness
    yield EMISSIVE, spec.emissive
    yield NORMAL, spec.normal
    yield OCCLUSION, spec.occlusion
    if spec.clearcoat is not None:
        yield CLEARCOAT, spec.clearcoat.factor
        yield CLEARCOAT_ROUGHNESS, spec.clearcoat.roughness
        yield CLEARCOAT_NORMAL, spec.clearcoat.normal
    if spec.transmission is not None:
        yield TRANSMISSION, spec.transmission.factor
    if spec.volume is not None:
        yield THICKNESS, spec.volume.thickness
        # an infinite attenuation distance absorbs nothing whatever the color
        if spec.volume.attenuation_distance is not None:
            yield ATTENUATION_COLOR, ConstantInput(spec.volume.attenuation_color)
            yield ATTENUATION_DISTANCE, ConstantInput(spec.volume.attenuation_distance)
    if spec.ior is not None:
        yield IOR, ConstantInput(spec.ior)
    if spec.specular is not None:
        yield SPECULAR, spec.specular.factor
        yield SPECULAR_COLOR, spec.specular.color
    if spec.sheen is not None:
        yield SHEEN_COLOR, spec.sheen.color
        yield SHEEN_ROUGHNESS, spec.sheen.roughness


def build_shading_graph(
    spec: MaterialSpec, representation: Representation, options: ConversionOptions
) -> ShadingGraph:
    """Build the shading network of ``spec`` in ``representation``."""
    graph = ShadingGraph(spec.name, representation)
    if representation is Representation.PREVIEW:
        dialect: _Dialect = _PreviewDialect(graph, options)
    else:
        dialect = _MaterialXDialect(graph, options)
    surface = dialect.create_surface()

    for slot, value in _slot_values(spec):
        name = slot.input_name(representation)
        if name is None or value is None:
            continue
        if slot.kind is SlotKind.NORMAL:
            dialect.connect_normal(surface, name, value)
        elif slot.kind is SlotKind.OCCLUSION:
            dialect.connect_occlusion(surface, name, value)
        elif isinstance(value, ConstantInput):
            dialect.set_constant(surface, name, slot, value)
        else:
            dialect.connect_texture(surface, name, slot, value)

    writes_alpha = spec.alpha_mode is not AlphaMode.OPAQUE
    if representation is Representation.PREVIEW and _masks_nothing(spec):
        writes_alpha = False
    if writes_alpha:
        name = ALPHA.input_name(representation)
        if isinstance(spec.alpha, ConstantInput):
            dialect.set_constant(surface, name, ALPHA, spec.alpha)
        else:
            dialect.connect_texture(surface, name, ALPHA, spec.alpha)
    dialect.finish(surface, spec)
    return graph


def _masks_nothing(spec: MaterialSpec) -> bool:
    """A MASK cutoff at or below zero keeps every texel, since alpha is never negative."""
    return spec.alpha_mode is AlphaMode.MASK and float(spec.alpha_cutoff) <= 0.0


class _Dialect:
    def __init__(self, graph: ShadingGraph, options: ConversionOptions) -> None:
        self.graph = graph
        self.options = options

    def create_surface(self) -> ShadingNode:
        raise NotImplementedError

    def set_constant(
        self, surface: ShadingNode, name: str, slot: _Slot, value: ConstantInput
    ) -> None:
        raise NotImplementedError

    def connect_texture(
        self, surface: ShadingNode, name: str, slot: _Slot, value: TextureInput
    ) -> None:
        raise NotImplementedError

    def connect_normal(self, surface: ShadingNode, name: str, value: TextureInput) -> None:
        raise NotImplementedError

    def connect_occlusion(self, surface: ShadingNode, name: str, value: TextureInput) -> None:
        raise NotImplementedError

    def finish(self, surface: ShadingNode, spec: MaterialSpec) -> None:
        raise NotImplementedError


def _as_tuple(value: float | tuple[float, ...], width: int) -> tuple[float, ...]:
    if isinstance(value, tuple):
        values = tuple(float(v) for v in value)
    else:
        values = (float(value),) * width
    if len(values) < width:
        values = values + (1.0,) * (width - len(values))
    return values[:width]


def _fit(value: float | tuple[float, ...], type: str) -> float | tuple[float, ...]:
    width = TYPE_WIDTHS[type]
    if width == 1:
        return float(value[0]) if isinstance(value, tuple) else float(value)
    return _as_tuple(value, width)


# -- UsdPreviewSurface --------------------------------------------------------

_WRAP_TOKENS = {WRAP_CLAMP_TO_EDGE: "clamp", WRAP_MIRRORED_REPEAT: "mirror"}

_UV_TEXTURE_OUTPUTS = {"rgb": "vector3", "r": "float", "g": "float", "b": "float", "a": "float"}


class _PreviewDialect(_Dialect):
    def __init__(self, graph: ShadingGraph, options: ConversionOptions) -> None:
        super().__init__(graph, options)
        self._readers: dict[tuple[int, Any], Connection] = {}

    def create_surface(self) -> ShadingNode:
        surface = self.graph.add_node(
            "UsdPreviewSurface", "token", "surface", outputs={"surface": "token"}
        )
        self.graph.surface = surface.name
        return surface

    def set_constant(
        self, surface: ShadingNode, name: str, slot: _Slot, value: ConstantInput
    ) -> None:
        type = "color3" if slot.kind is SlotKind.COLOR else "float"
        surface.set(name, type, _fit(value.value, type))

    def connect_texture(
        self, surface: ShadingNode, name: str, slot: _Slot, value: TextureInput
    ) -> None:
        channel = value.channel
        if channel == "g" and value.texture.image.channels == 2:
            channel = "a"
        if channel == "rgb":
            scale = _as_tuple(value.factor, 3) + (1.0,)
            fallback = _as_tuple(value.fallback, 3) + (1.0,)
        else:
            scale = _as_tuple(value.factor, 4)
            fallback = _as_tuple(value.fallback, 4)
        texture = self._uv_texture(value.texture, scale, (0.0, 0.0, 0.0, 0.0), fallback)
        type = "color3" if slot.kind is SlotKind.COLOR else "float"
        surface.connect(name, type, Connection(texture.name, channel))

    def connect_normal(self, surface: ShadingNode, name: str, value: TextureInput) -> None:
        s = float(value.factor)
        texture = self._uv_texture(
            value.texture, (2.0 * s, 2.0 * s, 2.0, 0.0), (-s, -s, -1.0, 0.0), (0.5, 0.5, 1.0, 0.0)
        )
        surface.connect(name, "vector3", Connection(texture.name, "rgb"))

    def connect_occlusion(self, surface: ShadingNode, name: str, value: TextureInput) -> None:
        k = float(value.factor)
        texture = self._uv_texture(
            value.texture, (k, k, k, k), (1.0 - k,) * 4, (1.0, 1.0, 1.0, 1.0)
        )
        surface.connect(name, "float", Connection(texture.name, "r"))

    def finish(self, surface: ShadingNode, spec: MaterialSpec) -> None:
        if spec.alpha_mode is AlphaMode.OPAQUE or _masks_nothing(spec):
            # a zero opacityThreshold would switch UsdPreviewSurface to blending
            surface.set("opacity", "float", 1.0)
        elif spec.alpha_mode is AlphaMode.MASK:
            surface.set("opacityThreshold", "float", float(spec.alpha_cutoff))
        if spec.specular is not None:
            surface.set("useSpecularWorkflow", "integer", 1)

    def _uv_texture(
        self,
        texture: TextureRef,
        scale: tuple[float, ...],
        bias: tuple[float, ...],
        fallback: tuple[float, ...],
    ) -> ShadingNode:
        node = self.graph.add_node(
            "UsdUVTexture", "vector4", "texture", outputs=dict(_UV_TEXTURE_OUTPUTS)
        )
        node.set("file", "filename", texture.image.asset_path)
        node.set("sourceColorSpace", "token", texture.image.colorspace)
        node.set("wrapS", "token", _WRAP_TOKENS.get(texture.wrap_s, "repeat"))
        node.set("wrapT", "token", _WRAP_TOKENS.get(texture.wrap_t, "repeat"))
        node.set("scale", "vector4", scale)
        node.set("bias", "vector4", bias)
        node.set("fallback", "vector4", fallback)
        node.connect("st", "vector2", self._texcoord(texture))
        return node

    def _texcoord(self, texture: TextureRef) -> Connection:
        transform = texture.transform
        if transform is not None and transform.is_identity:
            transform = None
        key = (texture.texcoord, transform)
        if key in self._readers:
            return self._readers[key]
        reader = self.graph.add_node(
            "UsdPrimvarReader_float2",
            "vector2",
            f"texcoord{texture.texcoord}",
            outputs={"result": "vector2"},
        )
        reader.set("varname", "string", st_set_name(texture.texcoord))
        source = Connection(reader.name, "result")
        if transform is not None:
            translation, rotation, scale = transform.flipped_placement()
            node = self.graph.add_node(
                "UsdTransform2d", "vector2", "transform2d", outputs={"result": "vector2"}
            )
            node.connect("in", "vector2", source)
            node.set("rotation", "float", rotation)
            node.set("scale", "vector2", scale)
            node.set("translation", "vector2", translation)
            source = Connection(node.name, "result")
        self._readers[key] = source
        return source


# -- MaterialX gltf_pbr ---------------------------------------------------------

_ADDRESS_MODES = {WRAP_CLAMP_TO_EDGE: "clamp", WRAP_MIRRORED_REPEAT: "mirror"}

# Multiplied by a vertex color primvar in the MaterialX graph.
_VERTEX_PROPERTIES = {
    "base_color": ("displayColor", "color3", (1.0, 1.0, 1.0)),
    "alpha": ("displayOpacity", "float", 1.0),
}

Operand = Connection | float | tuple[float, ...]


def default_nodedef(category: str, type: str) -> str:
    if category == "normalmap":
        return "ND_normalmap"
    if category == "gltf_pbr":
        return "ND_gltf_pbr_surfaceshader"
    return f"ND_{category}_{type}"


class _MaterialXDialect(_Dialect):
    def __init__(self, graph: ShadingGraph, options: ConversionOptions) -> None:
        super().__init__(graph, options)
        self._texcoords: dict[tuple[int, Any], Connection] = {}

    def create_surface(self) -> ShadingNode:
        surface = self.graph.add_node(
            "gltf_pbr",
            "surfaceshader",
            f"SR_{self.graph.material_name}",
            nodedef="ND_gltf_pbr_surfaceshader",
        )
        self.graph.surface = surface.name
        return surface

    def set_constant(
        self, surface: ShadingNode, name: str, slot: _Slot, value: ConstantInput
    ) -> None:
        type = "color3" if slot.kind is SlotKind.COLOR else "float"
        constant = _fit(value.value, type)
        if name in _VERTEX_PROPERTIES:
            surface.connect(name, type, self._with_vertex_property(name, constant, type))
        else:
            surface.set(name, type, constant)

    def connect_texture(
        self, surface: ShadingNode, name: str, slot: _Slot, value: TextureInput
    ) -> None:
        if slot.kind is SlotKind.COLOR:
            type = "color3"
            texel = self._color_texture(value, type, is_color=True)
        else:
            type = "float"
            texel = self._float_texture(value)
        factor = _fit(value.factor, type)
        if factor != _fit(1.0, type):
            texel = self._math("multiply", type, texel, factor, "factor")
        if name in _VERTEX_PROPERTIES:
            texel = self._with_vertex_property(name, texel, type)
        surface.connect(name, type, texel)

    def connect_normal(self, surface: ShadingNode, name: str, value: TextureInput) -> None:
        texel = self._color_texture(value, "vector3", is_color=False)
        node = self._node("normalmap", "vector3", "normalmap")
        node.connect("in", "vector3", texel)
        node.set("scale", "float", float(value.factor))
        surface.connect(name, "vector3", Connection(node.name))

    def connect_occlusion(self, surface: ShadingNode, name: str, value: TextureInput) -> None:
        # 1 + strength * (texel - 1)
        texel = self._float_texture(value)
        shifted = self._math("subtract", "float", texel, 1.0, "occlusion")
        scaled = self._math("multiply", "float", float(value.factor), shifted, "occlusion")
        surface.connect(name, "float", self._math("add", "float", 1.0, scaled, "occlusion"))

    def finish(self, surface: ShadingNode, spec: MaterialSpec) -> None:
        surface.set("alpha_mode", "integer", spec.alpha_mode.value)
        if spec.alpha_mode is AlphaMode.MASK:
            surface.set("alpha_cutoff", "float", float(spec.alpha_cutoff))
        if (
            self.options.hdstorm_compat
            and spec.alpha_mode is not AlphaMode.OPAQUE
            and self.options.gltf_pbr_impl != "flattened"
        ):
            transmission = surface.inputs.get("transmission")
            if transmission is None or (transmission.connection is None and not transmission.value):
                surface.set("transmission", "float", STORM_TRANSMISSION_SHIM)

    # -- node helpers --

    def _node(self, category: str, type: str, hint: str, nodedef: str | None = None) -> ShadingNode:
        nodedef = nodedef or default_nodedef(category, type)
        return self.graph.add_node(category, type, hint, nodedef=nodedef)

    def _math(self, category: str, type: str, in1: Operand, in2: Operand, hint: str) -> Connection:
        node = self._node(category, type, hint)
        for name, operand in (("in1", in1), ("in2", in2)):
            if isinstance(operand, Connection):
                node.connect(name, type, operand)
            else:
                node.set(name, type, _fit(operand, type))
        return Connection(node.name)

    def _with_vertex_property(self, name: str, value: Operand, type: str) -> Connection:
        primvar, _, default = _VERTEX_PROPERTIES[name]
        reader = self._node("geompropvalue", type, primvar)
        reader.set("geomprop", "string", primvar)
        reader.set("default", type, default)
        return self._math("multiply", type, Connection(reader.name), value, name)

    def _extract(self, source: Connection, source_type: str, index: int) -> Connection:
        node = self._node("extract", "float", "extract", nodedef=f"ND_extract_{source_type}")
        node.connect("in", source_type, source)
        node.set("index", "integer", index)
        return Connection(node.name)

    def _convert(self, source: Connection, source_type: str, type: str) -> Connection:
        node = self._node("convert", type, "convert", nodedef=f"ND_convert_{source_type}_{type}")
        node.connect("in", source_type, source)
        return Connection(node.name)

    def _per_channel(
        self, source: Connection, type: str, transform: Callable[[Connection], Connection]
    ) -> Connection:
        node = self._node("combine3", type, "combine")
        for index in range(3):
            node.connect(f"in{index + 1}", "float", transform(self._extract(source, type, index)))
        return Connection(node.name)

    def _decode_srgb(self, x: Connection) -> Connection:
        linear = self._math("divide", "float", x, 12.92, "srgb_decode")
        shifted = self._math("add", "float", x, 0.055, "srgb_decode")
        scaled = self._math("divide", "float", shifted, 1.055, "srgb_decode")
        curve = self._math("power", "float", scaled, 2.4, "srgb_decode")
        return self._select(x, 0.04045, linear, curve, "srgb_decode")

    def _encode_srgb(self, x: Connection) -> Connection:
        linear = self._math("multiply", "float", x, 12.92, "srgb_encode")
        curve = self._math("power", "float", x, 1.0 / 2.4, "srgb_encode")
        curve = self._math("multiply", "float", curve, 1.055, "srgb_encode")
        curve = self._math("subtract", "float", curve, 0.055, "srgb_encode")
        return self._select(x, 0.0031308, linear, curve, "srgb_encode")

    def _select(
        self, x: Connection, threshold: float, below: Connection, above: Connection, hint: str
    ) -> Connection:
        node = self._node("ifgreatereq", "float", hint)
        node.set("value1", "float", threshold)
        node.connect("value2", "float", x)
        node.connect("in1", "float", below)
        node.connect("in2", "float", above)
        clamp = self._node("clamp", "float", hint)
        clamp.connect("in", "float", Connection(node.name))
        clamp.set("low", "float", 0.0)
        clamp.set("high", "float", 1.0)
        return Connection(clamp.name)

    # -- textures --

    def _texcoord(self, texture: TextureRef) -> Connection:
        transform = texture.transform
        if transform is not None and transform.is_identity:
            transform = None
        key = (texture.texcoord, transform)
        if key in self._texcoords:
            return self._texcoords[key]
        reader = self._node("geompropvalue", "vector2", f"texcoord{texture.texcoord}")
        reader.set("geomprop", "string", st_set_name(texture.texcoord))
        source = Connection(reader.name)
        if transform is not None:
            translation, rotation, scale = transform.flipped_placement()
            source = self._math("multiply", "vector2", source, scale, "uv_scale")
            node = self._node("rotate2d", "vector2", "uv_rotate")
            node.connect("in", "vector2", source)
            node.set("amount", "float", rotation)
            source = self._math("add", "vector2", Connection(node.name), translation, "uv_offset")
        self._texcoords[key] = source
        return source

    def _image(self, texture: TextureRef, type: str, default: Any, colorspace: str) -> ShadingNode:
        node = self._node("image", type, "image")
        file = node.set("file", "filename", texture.image.asset_path)
        if not self.options.explicit_transforms:
            file.colorspace = colorspace
        node.set("default", type, _fit(default, type))
        node.connect("texcoord", "vector2", self._texcoord(texture))
        node.set("uaddressmode", "string", _ADDRESS_MODES.get(texture.wrap_s, "periodic"))
        node.set("vaddressmode", "string", _ADDRESS_MODES.get(texture.wrap_t, "periodic"))
        filtertype = "closest" if texture.mag_filter in NEAREST_FILTERS else "linear"
        node.set("filtertype", "string", filtertype)
        return node

    def _float_texture(self, value: TextureInput) -> Connection:
        image = value.texture.image
        index = "rgba".index(value.channel)
        reencode = self.options.hdstorm_compat and image.is_srgb_in_usd and index != 3
        fallback = value.fallback
        fallback = fallback[0] if isinstance(fallback, tuple) else float(fallback)
        if reencode:
            fallback = srgb_to_linear(fallback)
        type = {1: "float", 2: "vector2", 3: "vector3"}.get(image.channels, "vector4")
        node = self._image(value.texture, type, fallback, "lin_rec709")
        texel = Connection(node.name)
        if type != "float":
            if type == "vector2":
                index = 1 if index == 3 else 0
            texel = self._extract(texel, type, index)
        if reencode:
            texel = self._encode_srgb(texel)
        return texel

    def _color_texture(self, value: TextureInput, type: str, *, is_color: bool) -> Connection:
        image = value.texture.image
        srgb_in_usd = self.options.hdstorm_compat and image.is_srgb_in_usd
        explicit = self.options.explicit_transforms
        linearize = explicit and is_color and not srgb_in_usd
        reencode = explicit and not is_color and srgb_in_usd
        fallback = _as_tuple(value.fallback, 3)
        if linearize:
            fallback = tuple(linear_to_srgb(v) for v in fallback)
        elif reencode:
            fallback = tuple(srgb_to_linear(v) for v in fallback)

        if image.channels >= 4:
            image_type = "color4" if is_color else "vector4"
        elif image.channels == 3:
            image_type = type
        else:
            image_type = "vector2" if image.channels == 2 else "float"
        colorspace = "srgb_texture" if is_color else "lin_rec709"
        node = self._image(value.texture, image_type, fallback, colorspace)
        texel = Connection(node.name)
        if image_type == "vector2":
            texel = self._convert(self._extract(texel, "vector2", 0), "float", type)
        elif image_type != type:
            texel = self._convert(texel, image_type, type)

        if linearize:
            texel = self._per_channel(texel, type, self._decode_srgb)
        elif reencode:
            texel = self._per_channel(texel, type, self._encode_srgb)
        return texel


# -- inspection ---------------------------------------------------------------


def resolve_constant(
    graph: ShadingGraph, node_name: str, input_name: str
) -> float | tuple[float, ...]:
    """Fold ``node_name.input_name`` to a value.

    Raises ``ValueError`` when the input depends on a texture lookup.
    """
    node = graph.nodes[node_name]
    if input_name not in node.inputs:
        raise KeyError(f"{node_name} has no input {input_name!r}")
    return _fold_input(graph, node.inputs[input_name])


def _fold_input(graph: ShadingGraph, value: NodeInput) -> Any:
    if value.connection is None:
        return value.value
    return _fold_node(graph, graph.nodes[value.connection.node])


_BINARY_OPS: dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "multiply": np.multiply,
    "add": np.add,
    "subtract": np.subtract,
    "divide": np.divide,
    "power": np.power,
}


def _fold_node(graph: ShadingGraph, node: ShadingNode) -> Any:
    def arg(name: str) -> np.ndarray:
        return np.asarray(_fold_input(graph, node.inputs[name]), dtype=np.float64)

    if node.category in _BINARY_OPS:
        result = _BINARY_OPS[node.category](arg("in1"), arg("in2"))
    elif node.category == "geompropvalue" and "default" in node.inputs:
        result = arg("default")
    elif node.category == "clamp":
        result = np.clip(arg("in"), arg("low"), arg("high"))
    elif node.category == "extract":
        result = arg("in")[int(_fold_input(graph, node.inputs["index"]))]
    elif node.category == "convert":
        result = np.resize(arg("in"), TYPE_WIDTHS[node.type])
    elif node.category == "combine3":
        result = np.array([arg("in1"), arg("in2"), arg("in3")])
    elif node.category == "ifgreatereq":
        result = arg("in1") if arg("value1") >= arg("value2") else arg("in2")
    else:
        raise ValueError(f"{node.category} node {node.name!r} does not fold to a constant")
    if result.ndim == 0:
        return float(result)
    return tuple(float(v) for v in result)


def alpha_behavior(graph: ShadingGraph) -> tuple[AlphaMode, float | None]:
    """Effective alpha mode and cutoff expressed by a graph of either representation."""
    surface = graph.surface_node
    if graph.representation is Representation.MATERIALX:
        mode_input = surface.inputs.get("alpha_mode")
        mode = AlphaMode(int(mode_input.value)) if mode_input is not None else AlphaMode.OPAQUE
        if mode is AlphaMode.MASK:
            cutoff_input = surface.inputs.get("alpha_cutoff")
            cutoff = float(cutoff_input.value) if cutoff_input is not None else 0.5
            return (mode, cutoff) if cutoff > 0.0 else (AlphaMode.OPAQUE, None)
        if mode is AlphaMode.BLEND and _constant_alpha(graph, surface) >= 1.0:
            return AlphaMode.OPAQUE, None
        return mode, None

    threshold = surface.inputs.get("opacityThreshold")
    if threshold is not None and threshold.value and threshold.value > 0.0:
        return AlphaMode.MASK, float(threshold.value)
    opacity = surface.inputs.get("opacity")
    if opacity is not None and (opacity.connection is not None or float(opacity.value) < 1.0):
        return AlphaMode.BLEND, None
    return AlphaMode.OPAQUE, None


def _constant_alpha(graph: ShadingGraph, surface: ShadingNode) -> float:
    """gltf_pbr alpha without vertex colors; textured alpha counts as zero."""
    alpha = surface.inputs.get("alpha")
    if alpha is None:
        return 1.0
    try:
        return float(_fold_input(graph, alpha))
    except ValueError:
        return 0.0


def texture_files(graph: ShadingGraph) -> list[str]:
    """Asset paths sampled by ``graph`` in creation order."""
    category = "UsdUVTexture" if graph.representation is Representation.PREVIEW else "image"
    return [node.inputs["file"].value for node in graph.nodes_of(category)]
