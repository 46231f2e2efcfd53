"""glTF materials to representation-neutral ``MaterialSpec`` descriptions."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

import pygltflib
from pydantic import Field

from guc.document import ExtensionModel, SourceDocument, TextureTransform, parse_extension
from guc.errors import ImageError
from guc.images import ImageHandle, ImageResolver, ImageUsage
from guc.warning_policy import WarningPolicy, emit_warning

logger = logging.getLogger(__name__)

WRAP_REPEAT = 10497
WRAP_CLAMP_TO_EDGE = 33071
WRAP_MIRRORED_REPEAT = 33648


class AlphaMode(Enum):
    OPAQUE = 0
    MASK = 1
    BLEND = 2


# -- extension blocks ---------------------------------------------------------


class TextureInfoBlock(ExtensionModel):
    index: int
    texCoord: int = 0
    scale: float = 1.0
    strength: float = 1.0
    extensions: dict[str, Any] = Field(default_factory=dict)


class ClearcoatExtension(ExtensionModel):
    clearcoatFactor: float = 0.0
    clearcoatTexture: TextureInfoBlock | None = None
    clearcoatRoughnessFactor: float = 0.0
    clearcoatRoughnessTexture: TextureInfoBlock | None = None
    clearcoatNormalTexture: TextureInfoBlock | None = None


class TransmissionExtension(ExtensionModel):
    transmissionFactor: float = 0.0
    transmissionTexture: TextureInfoBlock | None = None


class VolumeExtension(ExtensionModel):
    thicknessFactor: float = 0.0
    thicknessTexture: TextureInfoBlock | None = None
    attenuationDistance: float | None = None
    attenuationColor: tuple[float, float, float] = (1.0, 1.0, 1.0)


class IorExtension(ExtensionModel):
    ior: float = 1.5


class SpecularExtension(ExtensionModel):
    specularFactor: float = 1.0
    specularTexture: TextureInfoBlock | None = None
    specularColorFactor: tuple[float, float, float] = (1.0, 1.0, 1.0)
    specularColorTexture: TextureInfoBlock | None = None


class SheenExtension(ExtensionModel):
    sheenColorFactor: tuple[float, float, float] = (0.0, 0.0, 0.0)
    sheenColorTexture: TextureInfoBlock | None = None
    sheenRoughnessFactor: float = 0.0
    sheenRoughnessTexture: TextureInfoBlock | None = None


class EmissiveStrengthExtension(ExtensionModel):
    emissiveStrength: float = 1.0


# -- material inputs ----------------------------------------------------------


@dataclass(frozen=True)
class UvTransform:
    """KHR_texture_transform parameters in glTF texture space."""

    offset: tuple[float, float] = (0.0, 0.0)
    rotation: float = 0.0
    scale: tuple[float, float] = (1.0, 1.0)

    @property
    def is_identity(self) -> bool:
        return self.offset == (0.0, 0.0) and self.rotation == 0.0 and self.scale == (1.0, 1.0)

    def flipped_placement(self) -> tuple[tuple[float, float], float, tuple[float, float]]:
        """(translation, rotation in degrees, scale) for texture coordinates with V flipped.

        Applied as scale, then counter-clockwise rotation, then translation, this
        samples the same texel as the glTF transform does on unflipped coordinates.
        """
        sx, sy = self.scale
        ox, oy = self.offset
        cos_r, sin_r = math.cos(self.rotation), math.sin(self.rotation)
        translation = (ox + sin_r * sy, 1.0 - oy - cos_r * sy)
        return translation, math.degrees(self.rotation), (sx, sy)


@dataclass(frozen=True)
class TextureRef:
    image: ImageHandle
    texcoord: int = 0
    transform: UvTransform | None = None
    wrap_s: int = WRAP_REPEAT
    wrap_t: int = WRAP_REPEAT
    min_filter: int | None = None
    mag_filter: int | None = None


@dataclass(frozen=True)
class ConstantInput:
    value: float | tuple[float, ...]


@dataclass(frozen=True)
class TextureInput:
    """Texel channel(s) multiplied by ``factor``.

    ``fallback`` is the texel value used when sampling fails.
    """

    texture: TextureRef
    channel: str  # "rgb", "r", "g", "b" or "a"
    factor: float | tuple[float, ...]
    fallback: float | tuple[float, ...] = 1.0


SlotValue = Union[ConstantInput, TextureInput]


@dataclass(frozen=True)
class ClearcoatSpec:
    factor: SlotValue
    roughness: SlotValue
    normal: TextureInput | None = None


@dataclass(frozen=True)
class TransmissionSpec:
    factor: SlotValue


@dataclass(frozen=True)
class VolumeSpec:
    thickness: SlotValue
    attenuation_color: tuple[float, float, float] = (1.0, 1.0, 1.0)
    attenuation_distance: float | None = None


@dataclass(frozen=True)
class SpecularSpec:
    factor: SlotValue
    color: SlotValue


@dataclass(frozen=True)
class SheenSpec:
    color: SlotValue
    roughness: SlotValue


@dataclass
class MaterialSpec:
    """One glTF material, independent of the shading representation."""

    name: str
    base_color: SlotValue = ConstantInput((1.0, 1.0, 1.0))
    alpha: SlotValue = ConstantInput(1.0)
    metallic: SlotValue = ConstantInput(1.0)
    roughness: SlotValue = ConstantInput(1.0)
    emissive: SlotValue = ConstantInput((0.0, 0.0, 0.0))
    normal: TextureInput | None = None
    occlusion: TextureInput | None = None
    alpha_mode: AlphaMode = AlphaMode.OPAQUE
    alpha_cutoff: float = 0.5
    double_sided: bool = False
    ior: float | None = None
    clearcoat: ClearcoatSpec | None = None
    transmission: TransmissionSpec | None = None
    volume: VolumeSpec | None = None
    specular: SpecularSpec | None = None
    sheen: SheenSpec | None = None


# -- translation --------------------------------------------------------------


class _SlotReader:
    """Resolves texture infos of one material into slot values."""

    def __init__(
        self,
        doc: SourceDocument,
        resolver: ImageResolver,
        policy: WarningPolicy | None,
        entity: str,
    ) -> None:
        self.doc = doc
        self.resolver = resolver
        self.policy = policy
        self.entity = entity

    def texture(self, info: TextureInfoBlock, usage: ImageUsage) -> TextureRef | None:
        if not self.doc.has_element("textures", info.index):
            emit_warning(
                "W05", f"texture {info.index} does not exist",
                policy=self.policy, entity=self.entity,
            )
            return None
        texture = self.doc.gltf.textures[info.index]
        if texture.source is None:
            emit_warning(
                "W05", f"texture {info.index} has no supported image source",
                policy=self.policy, entity=self.entity,
            )
            return None
        try:
            image = self.resolver.resolve(texture.source, usage)
        except ImageError as e:
            emit_warning("W03", str(e), policy=self.policy, entity=self.entity)
            return None

        texcoord = info.texCoord
        transform = None
        ext = parse_extension(
            info.extensions,
            "KHR_texture_transform",
            TextureTransform,
            policy=self.policy,
            entity=self.entity,
        )
        if ext is not None:
            transform = UvTransform(ext.offset, ext.rotation, ext.scale)
            if ext.texCoord is not None:
                texcoord = ext.texCoord

        wrap_s = wrap_t = WRAP_REPEAT
        min_filter = mag_filter = None
        if texture.sampler is not None and self.doc.has_element("samplers", texture.sampler):
            sampler = self.doc.gltf.samplers[texture.sampler]
            wrap_s = sampler.wrapS or WRAP_REPEAT
            wrap_t = sampler.wrapT or WRAP_REPEAT
            min_filter, mag_filter = sampler.minFilter, sampler.magFilter

        return TextureRef(image, texcoord, transform, wrap_s, wrap_t, min_filter, mag_filter)

    def slot(
        self,
        info: TextureInfoBlock | None,
        usage: ImageUsage,
        channel: str,
        factor: float | tuple[float, ...],
        fallback: float | tuple[float, ...] = 1.0,
    ) -> SlotValue:
        ref = self.texture(info, usage) if info is not None else None
        if ref is None:
            return ConstantInput(factor)
        if channel == "a" and ref.image.channels in (1, 3):
            # no alpha channel: texel alpha is 1
            return ConstantInput(factor)
        return TextureInput(ref, channel, factor, fallback)


def _info(obj: Any) -> TextureInfoBlock | None:
    """Typed view of a pygltflib texture info (or a raw extension dict)."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return TextureInfoBlock.model_validate(obj)
    scale = getattr(obj, "scale", None)
    strength = getattr(obj, "strength", None)
    return TextureInfoBlock(
        index=obj.index,
        texCoord=obj.texCoord or 0,
        scale=1.0 if scale is None else scale,
        strength=1.0 if strength is None else strength,
        extensions=obj.extensions or {},
    )


def _floats(values: Any, default: tuple[float, ...]) -> tuple[float, ...]:
    if values is None:
        return default
    return tuple(float(v) for v in values)


def translate_material(
    doc: SourceDocument,
    material_index: int,
    resolver: ImageResolver,
    *,
    name: str,
    policy: WarningPolicy | None = None,
) -> MaterialSpec:
    """Describe glTF material ``material_index`` as a ``MaterialSpec`` named ``name``.

    Unusable textures degrade to their factor with a diagnostic.
    """
    material: pygltflib.Material = doc.element("materials", material_index)
    entity = f"material {material.name or material_index!r}"
    reader = _SlotReader(doc, resolver, policy, entity)
    spec = MaterialSpec(name=name, double_sided=bool(material.doubleSided))

    pbr = material.pbrMetallicRoughness
    if pbr is not None:
        base = _floats(pbr.baseColorFactor, (1.0, 1.0, 1.0, 1.0))
        base_info = _info(pbr.baseColorTexture)
        spec.base_color = reader.slot(base_info, ImageUsage.COLOR, "rgb", base[:3], (1.0, 1.0, 1.0))
        spec.alpha = reader.slot(base_info, ImageUsage.COLOR, "a", base[3])
        mr_info = _info(pbr.metallicRoughnessTexture)
        metallic = 1.0 if pbr.metallicFactor is None else float(pbr.metallicFactor)
        roughness = 1.0 if pbr.roughnessFactor is None else float(pbr.roughnessFactor)
        spec.metallic = reader.slot(mr_info, ImageUsage.DATA, "b", metallic)
        spec.roughness = reader.slot(mr_info, ImageUsage.DATA, "g", roughness)

    normal_info = _info(material.normalTexture)
    if normal_info is not None:
        ref = reader.texture(normal_info, ImageUsage.NORMAL)
        if ref is not None:
            spec.normal = TextureInput(ref, "rgb", normal_info.scale, (0.5, 0.5, 1.0))

    occlusion_info = _info(material.occlusionTexture)
    if occlusion_info is not None:
        ref = reader.texture(occlusion_info, ImageUsage.DATA)
        if ref is not None:
            spec.occlusion = TextureInput(ref, "r", occlusion_info.strength)

    exts = material.extensions or {}
    strength = parse_extension(
        exts,
        "KHR_materials_emissive_strength",
        EmissiveStrengthExtension,
        policy=policy,
        entity=entity,
    )
    emissive_scale = strength.emissiveStrength if strength is not None else 1.0
    emissive = tuple(v * emissive_scale for v in _floats(material.emissiveFactor, (0.0, 0.0, 0.0)))
    spec.emissive = reader.slot(
        _info(material.emissiveTexture), ImageUsage.COLOR, "rgb", emissive, (1.0, 1.0, 1.0)
    )

    mode = material.alphaMode or "OPAQUE"
    if mode not in AlphaMode.__members__:
        emit_warning(
            "W05", f"unknown alphaMode {mode!r}, using OPAQUE", policy=policy, entity=entity
        )
        mode = "OPAQUE"
    spec.alpha_mode = AlphaMode[mode]
    spec.alpha_cutoff = 0.5 if material.alphaCutoff is None else float(material.alphaCutoff)

    _translate_extensions(spec, exts, reader)
    logger.debug("Translated %s as %s", entity, name)
    return spec


def _translate_extensions(spec: MaterialSpec, exts: dict[str, Any], reader: _SlotReader) -> None:
    def ext(name: str, model: type[ExtensionModel]) -> Any:
        return parse_extension(exts, name, model, policy=reader.policy, entity=reader.entity)

    data, color = ImageUsage.DATA, ImageUsage.COLOR
    white = (1.0, 1.0, 1.0)

    clearcoat = ext("KHR_materials_clearcoat", ClearcoatExtension)
    if clearcoat is not None:
        normal = None
        normal_info = clearcoat.clearcoatNormalTexture
        if normal_info is not None:
            ref = reader.texture(normal_info, ImageUsage.NORMAL)
            if ref is not None:
                normal = TextureInput(ref, "rgb", normal_info.scale, (0.5, 0.5, 1.0))
        spec.clearcoat = ClearcoatSpec(
            factor=reader.slot(clearcoat.clearcoatTexture, data, "r", clearcoat.clearcoatFactor),
            roughness=reader.slot(
                clearcoat.clearcoatRoughnessTexture, data, "g", clearcoat.clearcoatRoughnessFactor
            ),
            normal=normal,
        )

    transmission = ext("KHR_materials_transmission", TransmissionExtension)
    if transmission is not None:
        spec.transmission = TransmissionSpec(
            reader.slot(
                transmission.transmissionTexture, data, "r", transmission.transmissionFactor
            )
        )

    volume = ext("KHR_materials_volume", VolumeExtension)
    if volume is not None:
        spec.volume = VolumeSpec(
            thickness=reader.slot(volume.thicknessTexture, data, "g", volume.thicknessFactor),
            attenuation_color=tuple(volume.attenuationColor),
            attenuation_distance=volume.attenuationDistance,
        )

    ior = ext("KHR_materials_ior", IorExtension)
    if ior is not None:
        spec.ior = ior.ior

    specular = ext("KHR_materials_specular", SpecularExtension)
    if specular is not None:
        spec.specular = SpecularSpec(
            factor=reader.slot(specular.specularTexture, data, "a", specular.specularFactor),
            color=reader.slot(
                specular.specularColorTexture,
                color,
                "rgb",
                tuple(specular.specularColorFactor),
                white,
            ),
        )

    sheen = ext("KHR_materials_sheen", SheenExtension)
    if sheen is not None:
        spec.sheen = SheenSpec(
            color=reader.slot(
                sheen.sheenColorTexture, color, "rgb", tuple(sheen.sheenColorFactor), white
            ),
            roughness=reader.slot(
                sheen.sheenRoughnessTexture, data, "a", sheen.sheenRoughnessFactor
            ),
        )
