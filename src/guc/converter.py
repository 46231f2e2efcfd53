"""Scene assembly: the glTF node forest as USD layers."""

from __future__ import annotations

import logging
import math
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import numpy as np
from pxr import Gf, Sdf, Tf, Usd, UsdGeom, UsdLux, UsdShade, UsdUtils, Vt

from guc import __version__
from guc.document import (
    LightsPunctual,
    MaterialVariants,
    NodeLight,
    PunctualLight,
    SourceDocument,
    parse_extension,
)
from guc.errors import InputError, OutputError, UnsupportedFeatureError
from guc.images import ImageResolver
from guc.materials import MaterialSpec, translate_material
from guc.mesh import DrawUnit, process_mesh
from guc.mtlx import MaterialXWriter
from guc.naming import VARIANTS_NAMESPACE, NameRegistry, make_material_name, st_set_name
from guc.options import ConversionOptions
from guc.shading import Representation, build_shading_graph
from guc.usdshade import author_material
from guc.warning_policy import WarningPolicy, emit_warning

logger = logging.getLogger(__name__)

GEOM_PATH = Sdf.Path("/Geom")
MATERIALS_PATH = Sdf.Path("/Materials")
PREVIEW_PATH = MATERIALS_PATH.AppendChild("UsdPreviewSurface")
MATERIALX_PATH = MATERIALS_PATH.AppendChild("MaterialX")
MATERIALX_MATERIALS_PATH = MATERIALX_PATH.AppendChild("Materials")
VARIANT_SET_NAME = "materialVariants"

USD_EXTENSIONS = frozenset({".usd", ".usda", ".usdc", ".usdz"})

_IDENTITY_MATRIX = [1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0]


class ConversionState(Enum):
    INIT = "init"
    TRAVERSE_NODES = "traverse_nodes"
    EMIT_GEOMETRY = "emit_geometry"
    EMIT_MATERIALS = "emit_materials"
    BIND_AND_FINALIZE = "bind_and_finalize"
    WRITE = "write"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ConversionResult:
    """Files produced by a successful conversion (empty for in-memory runs)."""

    output: Path | None
    files: list[Path] = field(default_factory=list)
    material_count: int = 0
    mesh_count: int = 0


@dataclass
class _MeshInstance:
    path: Sdf.Path
    mesh_index: int


@dataclass
class _OutputLayout:
    primary: Path
    geometry: Path | None
    materialx: Path
    package: Path | None = None
    work_dir: Path | None = None


def plan_outputs(usd_path: Path, options: ConversionOptions) -> _OutputLayout:
    """File names written for ``usd_path``; raises ``OutputError`` for unusable destinations."""
    usd_path = Path(usd_path)
    suffix = usd_path.suffix.lower()
    if suffix not in USD_EXTENSIONS:
        raise OutputError(
            f"Unsupported output extension {usd_path.suffix!r} "
            f"(expected one of {sorted(USD_EXTENSIONS)})"
        )
    if not usd_path.parent.is_dir():
        raise OutputError(f"Output directory does not exist: {usd_path.parent}")

    stem = usd_path.stem
    package = None
    work_dir = None
    primary = usd_path
    if suffix == ".usdz":
        package = usd_path
        work_dir = Path(tempfile.mkdtemp(prefix="guc_usdz_"))
        primary = work_dir / f"{stem}.usdc"
    geometry = None if options.single_file else primary.with_name(f"{stem}_geom{primary.suffix}")
    return _OutputLayout(primary, geometry, primary.with_name(f"{stem}.mtlx"), package, work_dir)


class Converter:
    """One conversion run; ``run()`` walks the state machine once.

    With ``usd_path=None`` nothing is written and the composed stage is
    available as ``stage`` afterwards; embedded images then go to ``image_dir``
    or a temporary directory owned by ``resolver``.
    """

    def __init__(
        self,
        doc: SourceDocument,
        usd_path: Path | None,
        options: ConversionOptions | None = None,
        *,
        policy: WarningPolicy | None = None,
        image_dir: Path | None = None,
    ) -> None:
        self.doc = doc
        self.options = options or ConversionOptions()
        self.policy = policy
        self.state = ConversionState.INIT
        self.registry = NameRegistry()
        self.layout = plan_outputs(usd_path, self.options) if usd_path is not None else None

        output_dir = self.layout.primary.parent if self.layout is not None else None
        self.resolver = ImageResolver(doc, self.registry, output_dir, image_dir)
        self._mtlx_writer: MaterialXWriter | None = None
        self._mesh_instances: list[_MeshInstance] = []
        self._mesh_units: dict[int, list[tuple[str, DrawUnit]]] = {}
        self._mesh_prototypes: dict[int, Sdf.Path] = {}
        self._material_paths: dict[int, dict[Representation, Sdf.Path]] = {}
        self._lights: list[PunctualLight] = []
        self._variant_names: list[str] = []

        self.stage: Usd.Stage = Usd.Stage.CreateInMemory()
        if self.layout is not None and self.layout.geometry is not None:
            self.geom_stage: Usd.Stage = Usd.Stage.CreateInMemory()
        else:
            self.geom_stage = self.stage

    @property
    def split(self) -> bool:
        return self.geom_stage is not self.stage

    @property
    def inline_materialx(self) -> bool:
        return self.options.mtlx_as_usdshade or self.layout is None

    def run(self) -> ConversionResult:
        try:
            self._setup()
            self._enter(ConversionState.TRAVERSE_NODES)
            self._traverse()
            self._enter(ConversionState.EMIT_GEOMETRY)
            self._emit_geometry()
            self._enter(ConversionState.EMIT_MATERIALS)
            self._emit_materials()
            self._enter(ConversionState.BIND_AND_FINALIZE)
            self._bind_and_finalize()
            self._enter(ConversionState.WRITE)
            files = self._write()
        except Exception:
            self._enter(ConversionState.FAILED)
            raise
        finally:
            if self.layout is not None and self.layout.work_dir is not None:
                shutil.rmtree(self.layout.work_dir, ignore_errors=True)
        self._enter(ConversionState.DONE)
        output = None
        if self.layout is not None:
            output = self.layout.package or self.layout.primary
        return ConversionResult(output, files, len(self._material_paths), len(self._mesh_units))

    def _enter(self, state: ConversionState) -> None:
        logger.debug("%s: %s -> %s", self.doc.name, self.state.value, state.value)
        self.state = state

    # -- init --

    def _setup(self) -> None:
        stages = [self.stage, self.geom_stage] if self.split else [self.stage]
        for stage in stages:
            UsdGeom.SetStageUpAxis(stage, UsdGeom.Tokens.y)
            UsdGeom.SetStageMetersPerUnit(stage, 1.0)
            root = UsdGeom.Xform.Define(stage, GEOM_PATH).GetPrim()
            stage.SetDefaultPrim(root)
            stage.GetRootLayer().documentation = (
                f"Converted from {self.doc.path.name} by guc {__version__}"
            )

        asset = self.doc.gltf.asset
        root = self.stage.GetPrimAtPath(GEOM_PATH)
        for key in ("copyright", "generator", "version", "minVersion"):
            value = getattr(asset, key, None)
            if value:
                root.SetCustomDataByKey(f"gltf:{key}", value)

        lights = self.doc.root_extension("KHR_lights_punctual", LightsPunctual)
        self._lights = lights.lights if lights is not None else []
        variants = self.doc.root_extension("KHR_materials_variants", MaterialVariants)
        if variants is not None:
            self._variant_names = [
                self.registry.make_unique_name(VARIANTS_NAMESPACE, variant.name, "variant")
                for variant in variants.variants
            ]

        if self.options.emit_mtlx and not self.inline_materialx:
            self._mtlx_writer = MaterialXWriter(self.options, policy=self.policy)
        options = self.options
        if options.emit_mtlx and options.mtlx_as_usdshade and options.gltf_pbr_impl == "file":
            emit_warning(
                "W06",
                "gltf_pbr implementation file not written for inlined MaterialX",
                policy=self.policy,
            )

    # -- traversal --

    def _traverse(self) -> None:
        scenes = self.doc.scene_roots()
        if len(scenes) == 1:
            roots = [(GEOM_PATH, scenes[0][1])]
        else:
            roots = []
            for scene_name, nodes in scenes:
                name = self.registry.make_unique_name(str(GEOM_PATH), scene_name, "scene")
                path = GEOM_PATH.AppendChild(name)
                UsdGeom.Xform.Define(self.geom_stage, path)
                roots.append((path, nodes))
        for parent, nodes in roots:
            for node_index in nodes:
                self._visit(node_index, parent, frozenset())

    def _visit(self, node_index: int, parent: Sdf.Path, ancestors: frozenset[int]) -> None:
        if node_index in ancestors:
            raise InputError(f"Node hierarchy contains a cycle through node {node_index}")
        node = self.doc.element("nodes", node_index)
        name = self.registry.make_unique_name(str(parent), node.name, "node")
        path = parent.AppendChild(name)
        xform = UsdGeom.Xform.Define(self.geom_stage, path)
        _set_transform(xform, node)

        namespace = str(path)
        if node.mesh is not None:
            self.doc.element("meshes", node.mesh)
            mesh_label = self.doc.gltf.meshes[node.mesh].name
            mesh_name = self.registry.make_unique_name(namespace, mesh_label, "mesh")
            self._mesh_instances.append(_MeshInstance(path.AppendChild(mesh_name), node.mesh))
        if node.camera is not None:
            self._author_camera(path, node.camera)
        light = parse_extension(
            node.extensions,
            "KHR_lights_punctual",
            NodeLight,
            policy=self.policy,
            entity=f"node {name}",
        )
        if light is not None:
            self._author_light(path, light.light)

        for child in node.children or []:
            self._visit(child, path, ancestors | {node_index})

    def _author_camera(self, parent: Sdf.Path, camera_index: int) -> None:
        camera = self.doc.element("cameras", camera_index)
        name = self.registry.make_unique_name(str(parent), camera.name, "cam")
        gf_camera = Gf.Camera()
        if camera.type == "orthographic" and camera.orthographic is not None:
            ortho = camera.orthographic
            gf_camera.projection = Gf.Camera.Orthographic
            gf_camera.horizontalAperture = 2.0 * ortho.xmag / Gf.Camera.APERTURE_UNIT
            gf_camera.verticalAperture = 2.0 * ortho.ymag / Gf.Camera.APERTURE_UNIT
            gf_camera.clippingRange = Gf.Range1f(ortho.znear, ortho.zfar)
        elif camera.perspective is not None:
            persp = camera.perspective
            gf_camera.projection = Gf.Camera.Perspective
            gf_camera.SetPerspectiveFromAspectRatioAndFieldOfView(
                persp.aspectRatio or 1.0, math.degrees(persp.yfov), Gf.Camera.FOVVertical
            )
            gf_camera.clippingRange = Gf.Range1f(persp.znear, persp.zfar or 1.0e6)
        else:
            emit_warning("W05", f"camera {camera_index} has no projection", policy=self.policy)
            return

        usd_camera = UsdGeom.Camera.Define(self.geom_stage, parent.AppendChild(name))
        usd_camera.SetFromCamera(gf_camera)
        # the node Xform carries the transform
        prim = usd_camera.GetPrim()
        prim.RemoveProperty("xformOp:transform")
        prim.RemoveProperty("xformOpOrder")

    def _author_light(self, parent: Sdf.Path, light_index: int) -> None:
        if not 0 <= light_index < len(self._lights):
            emit_warning("W05", f"light {light_index} does not exist", policy=self.policy)
            return
        light = self._lights[light_index]
        path = parent.AppendChild(self.registry.make_unique_name(str(parent), light.name, "light"))
        if light.type == "directional":
            usd_light = UsdLux.DistantLight.Define(self.geom_stage, path)
        else:
            usd_light = UsdLux.SphereLight.Define(self.geom_stage, path)
            usd_light.CreateTreatAsPointAttr(True)
            if light.type == "spot" and light.spot is not None:
                outer = light.spot.outerConeAngle
                shaping = UsdLux.ShapingAPI.Apply(usd_light.GetPrim())
                shaping.CreateShapingConeAngleAttr(math.degrees(outer))
                softness = (outer - light.spot.innerConeAngle) / outer if outer > 0.0 else 0.0
                shaping.CreateShapingConeSoftnessAttr(softness)
        usd_light.CreateIntensityAttr(light.intensity)
        usd_light.CreateColorAttr(Gf.Vec3f(*light.color))

    # -- geometry --

    def _emit_geometry(self) -> None:
        for instance in self._mesh_instances:
            if instance.mesh_index in self._mesh_prototypes:
                prim = self.geom_stage.DefinePrim(instance.path, "Xform")
                prototype = self._mesh_prototypes[instance.mesh_index]
                prim.GetReferences().AddInternalReference(prototype)
                continue

            canonical = process_mesh(
                self.doc,
                instance.mesh_index,
                weighting=self.options.tangent_weighting,
                policy=self.policy,
            )
            UsdGeom.Xform.Define(self.geom_stage, instance.path)
            self._mesh_prototypes[instance.mesh_index] = instance.path
            named: list[tuple[str, DrawUnit]] = []
            for i, unit in enumerate(canonical.units):
                label = "submesh" if len(canonical.units) == 1 else f"submesh_{i}"
                name = self.registry.make_unique_name(str(instance.path), label, "submesh")
                self._author_mesh(instance.path.AppendChild(name), unit)
                named.append((name, unit))
            self._mesh_units[instance.mesh_index] = named
            logger.debug(
                "Mesh %d: %d draw units at %s", instance.mesh_index, len(named), instance.path
            )

    def _author_mesh(self, path: Sdf.Path, unit: DrawUnit) -> None:
        mesh = UsdGeom.Mesh.Define(self.geom_stage, path)
        mesh.CreateSubdivisionSchemeAttr(UsdGeom.Tokens.none)
        points = _f32(unit.points)
        mesh.CreatePointsAttr(Vt.Vec3fArray.FromNumpy(points))
        mesh.CreateFaceVertexCountsAttr(Vt.IntArray.FromNumpy(_i32(unit.face_vertex_counts)))
        mesh.CreateFaceVertexIndicesAttr(Vt.IntArray.FromNumpy(_i32(unit.indices)))
        if len(points):
            extent = np.stack([points.min(axis=0), points.max(axis=0)])
            mesh.CreateExtentAttr(Vt.Vec3fArray.FromNumpy(extent))
        mesh.CreateDoubleSidedAttr(self._double_sided(unit))

        if unit.normals is not None:
            mesh.CreateNormalsAttr(Vt.Vec3fArray.FromNumpy(_f32(unit.normals)))
            mesh.SetNormalsInterpolation(UsdGeom.Tokens.vertex)

        primvars = UsdGeom.PrimvarsAPI(mesh)
        for index, uv in enumerate(unit.texcoords):
            flipped = np.array(uv, dtype=np.float32)
            flipped[:, 1] = 1.0 - flipped[:, 1]
            primvar = primvars.CreatePrimvar(
                st_set_name(index), Sdf.ValueTypeNames.TexCoord2fArray, UsdGeom.Tokens.vertex
            )
            primvar.Set(Vt.Vec2fArray.FromNumpy(flipped))

        # MaterialX graphs read both primvars, so they always exist there
        if unit.colors is not None:
            color = mesh.CreateDisplayColorPrimvar(UsdGeom.Tokens.vertex)
            color.Set(Vt.Vec3fArray.FromNumpy(_f32(unit.colors)))
        elif self.options.emit_mtlx:
            color = mesh.CreateDisplayColorPrimvar(UsdGeom.Tokens.constant)
            color.Set(Vt.Vec3fArray([Gf.Vec3f(1.0)]))
        if unit.opacities is not None:
            opacity = mesh.CreateDisplayOpacityPrimvar(UsdGeom.Tokens.vertex)
            opacity.Set(Vt.FloatArray.FromNumpy(_f32(unit.opacities)))
        elif self.options.emit_mtlx:
            opacity = mesh.CreateDisplayOpacityPrimvar(UsdGeom.Tokens.constant)
            opacity.Set(Vt.FloatArray([1.0]))

        if unit.tangents is not None and unit.normals is not None:
            tangents = _f32(unit.tangents[:, :3])
            bitangents = _f32(unit.tangents[:, 3:4] * np.cross(unit.normals, tangents))
            for name, values in (("tangents", tangents), ("bitangents", bitangents)):
                primvar = primvars.CreatePrimvar(
                    name, Sdf.ValueTypeNames.Float3Array, UsdGeom.Tokens.vertex
                )
                primvar.Set(Vt.Vec3fArray.FromNumpy(values))

    def _double_sided(self, unit: DrawUnit) -> bool:
        if unit.material is None:
            return False
        return bool(self.doc.gltf.materials[unit.material].doubleSided)

    # -- materials --

    def _used_materials(self) -> list[int]:
        used: set[int] = set()
        for units in self._mesh_units.values():
            for _, unit in units:
                if unit.material is not None:
                    used.add(unit.material)
                used.update(material for _, material in unit.variant_materials)
        return sorted(used)

    def _emit_materials(self) -> None:
        used = self._used_materials()
        if not used:
            return
        UsdGeom.Scope.Define(self.stage, MATERIALS_PATH)
        UsdGeom.Scope.Define(self.stage, PREVIEW_PATH)
        if self.options.emit_mtlx and self.inline_materialx:
            UsdGeom.Scope.Define(self.stage, MATERIALX_PATH)
            UsdGeom.Scope.Define(self.stage, MATERIALX_MATERIALS_PATH)

        for index in used:
            name = make_material_name(self.registry, self.doc.gltf.materials[index].name)
            try:
                spec = translate_material(
                    self.doc, index, self.resolver, name=name, policy=self.policy
                )
            except UnsupportedFeatureError as e:
                emit_warning(
                    "W04",
                    f"{e}; using default material",
                    policy=self.policy,
                    entity=f"material {index}",
                )
                spec = MaterialSpec(name=name)
            self._material_paths[index] = self._author_material(spec)

    def _author_material(self, spec: MaterialSpec) -> dict[Representation, Sdf.Path]:
        paths = {}
        preview = build_shading_graph(spec, Representation.PREVIEW, self.options)
        paths[Representation.PREVIEW] = PREVIEW_PATH.AppendChild(spec.name)
        author_material(self.stage, paths[Representation.PREVIEW], preview)

        if self.options.emit_mtlx:
            graph = build_shading_graph(spec, Representation.MATERIALX, self.options)
            paths[Representation.MATERIALX] = MATERIALX_MATERIALS_PATH.AppendChild(spec.name)
            if self._mtlx_writer is not None:
                self._mtlx_writer.add_material(graph)
                # bound before the sidecar reference exists
                self.stage.OverridePrim(paths[Representation.MATERIALX])
            else:
                author_material(self.stage, paths[Representation.MATERIALX], graph)
        return paths

    # -- bindings --

    def _bind_and_finalize(self) -> None:
        variant_set = None
        if self._variant_names:
            root = self.stage.GetPrimAtPath(GEOM_PATH)
            variant_set = root.GetVariantSets().AddVariantSet(VARIANT_SET_NAME)
            for name in self._variant_names:
                variant_set.AddVariant(name)

        for instance in self._mesh_instances:
            for name, unit in self._mesh_units.get(instance.mesh_index, []):
                path = instance.path.AppendChild(name)
                if unit.variant_materials and variant_set is not None:
                    continue
                if unit.material is not None:
                    self._bind(path, unit.material)

        if variant_set is None:
            return
        for variant_index, variant_name in enumerate(self._variant_names):
            variant_set.SetVariantSelection(variant_name)
            with variant_set.GetVariantEditContext():
                for instance in self._mesh_instances:
                    for name, unit in self._mesh_units.get(instance.mesh_index, []):
                        if not unit.variant_materials:
                            continue
                        material = dict(unit.variant_materials).get(variant_index, unit.material)
                        if material is not None:
                            self._bind(instance.path.AppendChild(name), material)

        selected = self.options.default_material_variant
        if selected >= len(self._variant_names):
            emit_warning(
                "W05",
                f"default_material_variant {selected} out of range "
                f"({len(self._variant_names)} variants), using 0",
                policy=self.policy,
            )
            selected = 0
        variant_set.SetVariantSelection(self._variant_names[selected])

    def _bind(self, path: Sdf.Path, material_index: int) -> None:
        paths = self._material_paths.get(material_index)
        if paths is None:
            return
        prim = self.stage.OverridePrim(path)
        binding = UsdShade.MaterialBindingAPI.Apply(prim)
        preview = UsdShade.Material(self.stage.GetPrimAtPath(paths[Representation.PREVIEW]))
        if Representation.MATERIALX not in paths:
            binding.Bind(preview)
            return
        materialx = UsdShade.Material(self.stage.GetPrimAtPath(paths[Representation.MATERIALX]))
        binding.Bind(materialx, UsdShade.Tokens.weakerThanDescendants, UsdShade.Tokens.allPurpose)
        binding.Bind(preview, UsdShade.Tokens.weakerThanDescendants, UsdShade.Tokens.preview)

    # -- write --

    def _write(self) -> list[Path]:
        if self.layout is None:
            return []
        layout = self.layout
        files: list[Path] = list(self.resolver.written_files)

        sidecar = self._mtlx_writer is not None and bool(self._mtlx_writer.material_names)
        if sidecar:
            files.extend(self._mtlx_writer.write(layout.materialx))
        if layout.geometry is not None:
            _export(self.geom_stage, layout.geometry)
            files.append(layout.geometry)
        _export(self.stage, layout.primary)
        self._author_external_arcs(layout, sidecar)
        files.append(layout.primary)

        if layout.package is not None:
            packaged = UsdUtils.CreateNewUsdzPackage(
                Sdf.AssetPath(str(layout.primary)), str(layout.package)
            )
            if not packaged:
                raise OutputError(f"Cannot create USDZ package {layout.package}")
            files = [layout.package]
        logger.info("Wrote %s", layout.package or layout.primary)
        return files

    def _author_external_arcs(self, layout: _OutputLayout, sidecar: bool) -> None:
        """Author the payload and MaterialX reference on the written layer.

        Done on the file so the arcs never compose against unwritten assets.
        """
        if layout.geometry is None and not sidecar:
            return
        layer = Sdf.Layer.FindOrOpen(str(layout.primary))
        if layer is None:
            raise OutputError(f"Cannot reopen {layout.primary}")
        if layout.geometry is not None:
            geom = layer.GetPrimAtPath(GEOM_PATH)
            geom.payloadList.Prepend(Sdf.Payload(f"./{layout.geometry.name}"))
        if sidecar:
            spec = Sdf.CreatePrimInLayer(layer, MATERIALX_PATH)
            reference = Sdf.Reference(f"./{layout.materialx.name}", Sdf.Path("/MaterialX"))
            spec.referenceList.Prepend(reference)
        if not layer.Save():
            raise OutputError(f"Cannot save {layout.primary}")


def _set_transform(xform: UsdGeom.Xform, node) -> None:
    if node.matrix is not None and list(node.matrix) != _IDENTITY_MATRIX:
        xform.AddTransformOp(UsdGeom.XformOp.PrecisionDouble).Set(Gf.Matrix4d(*node.matrix))
        return
    if node.translation is not None and list(node.translation) != [0.0, 0.0, 0.0]:
        xform.AddTranslateOp(UsdGeom.XformOp.PrecisionFloat).Set(Gf.Vec3f(*node.translation))
    if node.rotation is not None and list(node.rotation) != [0.0, 0.0, 0.0, 1.0]:
        x, y, z, w = node.rotation
        xform.AddOrientOp(UsdGeom.XformOp.PrecisionFloat).Set(Gf.Quatf(w, Gf.Vec3f(x, y, z)))
    if node.scale is not None and list(node.scale) != [1.0, 1.0, 1.0]:
        xform.AddScaleOp(UsdGeom.XformOp.PrecisionFloat).Set(Gf.Vec3f(*node.scale))


def _export(stage: Usd.Stage, path: Path) -> None:
    try:
        ok = stage.GetRootLayer().Export(str(path))
    except Tf.ErrorException as e:
        raise OutputError(f"Cannot write {path}: {e}") from e
    if not ok:
        raise OutputError(f"Cannot write {path}")


def _f32(values: np.ndarray) -> np.ndarray:
    return np.ascontiguousarray(values, dtype=np.float32)


def _i32(values: np.ndarray) -> np.ndarray:
    return np.ascontiguousarray(values, dtype=np.int32)
