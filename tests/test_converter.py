"""End-to-end conversion tests: glTF in, composed USD stage out."""

from __future__ import annotations

import warnings

import MaterialX as mx
import numpy as np
import pygltflib
import pytest
from pxr import Sdf, Usd, UsdGeom, UsdLux, UsdShade

from guc.api import convert, convert_file, open_gltf_stage
from guc.converter import VARIANT_SET_NAME, plan_outputs
from guc.errors import DiagnosticError, InputError, OutputError
from guc.options import ConversionOptions
from guc.warning_policy import WarningPolicy

from conftest import add_triangle, png_bytes


def _codes(records) -> list[str]:
    return [r.message.code for r in records if hasattr(r.message, "code")]


def _meshes(stage: Usd.Stage) -> list[UsdGeom.Mesh]:
    return [UsdGeom.Mesh(prim) for prim in stage.Traverse() if prim.IsA(UsdGeom.Mesh)]


def _bound_material(prim: Usd.Prim) -> str:
    material, _ = UsdShade.MaterialBindingAPI(prim).ComputeBoundMaterial()
    return str(material.GetPath()) if material else ""


class TestPlanOutputs:
    def test_split_layout(self, tmp_path):
        layout = plan_outputs(tmp_path / "car.usda", ConversionOptions())
        assert layout.primary == tmp_path / "car.usda"
        assert layout.geometry == tmp_path / "car_geom.usda"
        assert layout.materialx == tmp_path / "car.mtlx"
        assert layout.package is None

    def test_single_file(self, tmp_path):
        plan = plan_outputs(tmp_path / "car.usdc", ConversionOptions(single_file=True))
        assert plan.geometry is None

    def test_usdz_builds_in_work_dir(self, tmp_path):
        layout = plan_outputs(tmp_path / "car.usdz", ConversionOptions())
        assert layout.package == tmp_path / "car.usdz"
        assert layout.primary.suffix == ".usdc"
        assert layout.primary.parent == layout.work_dir

    def test_bad_extension(self, tmp_path):
        with pytest.raises(OutputError, match="extension"):
            plan_outputs(tmp_path / "car.obj", ConversionOptions())

    def test_missing_directory(self, tmp_path):
        with pytest.raises(OutputError, match="does not exist"):
            plan_outputs(tmp_path / "nowhere" / "car.usda", ConversionOptions())


class TestConvertTriangle:
    def test_stage_layout(self, red_triangle, tmp_path):
        out = tmp_path / "red.usda"
        result = convert_file(red_triangle, out)
        assert result.output == out
        assert out.exists()
        assert (tmp_path / "red_geom.usda").exists()
        assert result.mesh_count == 1
        assert result.material_count == 1

        stage = Usd.Stage.Open(str(out))
        assert UsdGeom.GetStageUpAxis(stage) == UsdGeom.Tokens.y
        assert UsdGeom.GetStageMetersPerUnit(stage) == 1.0
        assert stage.GetDefaultPrim().GetPath() == Sdf.Path("/Geom")
        assert stage.GetPrimAtPath("/Geom").GetCustomDataByKey("gltf:generator") == "guc tests"

        (mesh,) = _meshes(stage)
        assert mesh.GetPath() == Sdf.Path("/Geom/tri/triangle/submesh")
        assert list(mesh.GetFaceVertexCountsAttr().Get()) == [3]
        assert list(mesh.GetFaceVertexIndicesAttr().Get()) == [0, 1, 2]
        assert len(mesh.GetPointsAttr().Get()) == 3
        assert mesh.GetNormalsInterpolation() == UsdGeom.Tokens.vertex
        assert _bound_material(mesh.GetPrim()) == "/Materials/UsdPreviewSurface/red"

    def test_texcoords_flipped(self, red_triangle, tmp_path):
        out = tmp_path / "red.usda"
        convert_file(red_triangle, out, ConversionOptions(single_file=True))
        stage = Usd.Stage.Open(str(out))
        (mesh,) = _meshes(stage)
        st = UsdGeom.PrimvarsAPI(mesh).GetPrimvar("st")
        assert st.GetInterpolation() == UsdGeom.Tokens.vertex
        np.testing.assert_allclose(np.array(st.Get()), [(0.0, 1.0), (1.0, 1.0), (0.0, 0.0)])

    def test_single_file(self, red_triangle, tmp_path):
        out = tmp_path / "red.usdc"
        result = convert_file(red_triangle, out, ConversionOptions(single_file=True))
        assert not (tmp_path / "red_geom.usdc").exists()
        assert result.files == [out]
        assert not Sdf.Layer.FindOrOpen(str(out)).GetPrimAtPath("/Geom").hasPayloads

    def test_split_payload(self, red_triangle, tmp_path):
        out = tmp_path / "red.usda"
        convert_file(red_triangle, out)
        layer = Sdf.Layer.FindOrOpen(str(out))
        payloads = layer.GetPrimAtPath("/Geom").payloadList.prependedItems
        assert [p.assetPath for p in payloads] == ["./red_geom.usda"]

    def test_preview_material(self, red_triangle, tmp_path):
        out = tmp_path / "red.usda"
        convert_file(red_triangle, out)
        stage = Usd.Stage.Open(str(out))
        material = UsdShade.Material(stage.GetPrimAtPath("/Materials/UsdPreviewSurface/red"))
        source = material.GetSurfaceOutput().GetConnectedSource()
        shader = UsdShade.Shader(source[0].GetPrim())
        assert shader.GetIdAttr().Get() == "UsdPreviewSurface"
        assert tuple(shader.GetInput("diffuseColor").Get()) == pytest.approx((1.0, 0.0, 0.0))
        assert shader.GetInput("metallic").Get() == pytest.approx(0.0)

    def test_usdz(self, red_triangle, tmp_path):
        out = tmp_path / "red.usdz"
        result = convert_file(red_triangle, out)
        assert result.files == [out]
        assert out.exists()
        assert not (tmp_path / "red.usdc").exists()
        stage = Usd.Stage.Open(str(out))
        assert len(_meshes(stage)) == 1


class TestConvertMaterialX:
    def test_sidecar(self, red_triangle, tmp_path):
        out = tmp_path / "red.usda"
        result = convert_file(red_triangle, out, ConversionOptions(emit_mtlx=True))
        sidecar = tmp_path / "red.mtlx"
        assert sidecar in result.files

        doc = mx.createDocument()
        mx.readFromXmlFile(doc, str(sidecar))
        assert doc.getNode("red").getCategory() == "surfacematerial"

        layer = Sdf.Layer.FindOrOpen(str(out))
        references = layer.GetPrimAtPath("/Materials/MaterialX").referenceList.prependedItems
        assert [(r.assetPath, r.primPath) for r in references] == [
            ("./red.mtlx", Sdf.Path("/MaterialX"))
        ]

        geom = Sdf.Layer.FindOrOpen(str(tmp_path / "red_geom.usda"))
        color_path = "/Geom/tri/triangle/submesh.primvars:displayColor"
        assert geom.GetAttributeAtPath(color_path) is not None

        stage = Usd.Stage.Open(str(out))
        (usd_mesh,) = _meshes(stage)
        binding = UsdShade.MaterialBindingAPI(usd_mesh.GetPrim())
        assert binding.GetDirectBindingRel().GetTargets() == [
            Sdf.Path("/Materials/MaterialX/Materials/red")
        ]
        assert binding.GetDirectBindingRel(UsdShade.Tokens.preview).GetTargets() == [
            Sdf.Path("/Materials/UsdPreviewSurface/red")
        ]

    def test_flattened_sidecar(self, red_triangle, tmp_path):
        options = ConversionOptions(emit_mtlx=True, gltf_pbr_impl="flattened")
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            result = convert_file(red_triangle, tmp_path / "red.usda", options)
        assert "W06" not in _codes(w)
        assert tmp_path / "gltf_pbr.mtlx" not in result.files

        doc = mx.createDocument()
        mx.readFromXmlFile(doc, str(tmp_path / "red.mtlx"))
        assert not [e for e in doc.traverseTree() if e.getCategory() == "gltf_pbr"]
        assert doc.getNode("red").getCategory() == "surfacematerial"

    def test_file_impl_sidecar(self, red_triangle, tmp_path):
        options = ConversionOptions(emit_mtlx=True, gltf_pbr_impl="file")
        result = convert_file(red_triangle, tmp_path / "red.usda", options)
        assert tmp_path / "gltf_pbr.mtlx" in result.files
        assert 'href="gltf_pbr.mtlx"' in (tmp_path / "red.mtlx").read_text()

    def test_as_usdshade(self, red_triangle, tmp_path):
        out = tmp_path / "red.usda"
        options = ConversionOptions(emit_mtlx=True, mtlx_as_usdshade=True)
        result = convert_file(red_triangle, out, options)
        assert not (tmp_path / "red.mtlx").exists()
        assert tmp_path / "red.mtlx" not in result.files

        stage = Usd.Stage.Open(str(out))
        path = Sdf.Path("/Materials/MaterialX/Materials/red")
        material = UsdShade.Material(stage.GetPrimAtPath(path))
        assert material
        assert material.GetSurfaceOutput("mtlx").HasConnectedSource()
        assert stage.GetPrimAtPath(path.AppendChild("NG_red")).IsA(UsdShade.NodeGraph)
        shader = UsdShade.Shader(stage.GetPrimAtPath(path.AppendChild("SR_red")))
        assert shader.GetIdAttr().Get() == "ND_gltf_pbr_surfaceshader"
        (mesh,) = _meshes(stage)
        assert _bound_material(mesh.GetPrim()) == str(path)

    def test_inline_with_file_impl_warns(self, red_triangle, tmp_path):
        options = ConversionOptions(emit_mtlx=True, mtlx_as_usdshade=True, gltf_pbr_impl="file")
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            convert_file(red_triangle, tmp_path / "red.usda", options)
        assert "W06" in _codes(w)


class TestConvertTextures:
    def test_normal_map(self, normal_mask_asset, tmp_path):
        out = tmp_path / "masked.usda"
        result = convert_file(normal_mask_asset, out, ConversionOptions(single_file=True))
        assert tmp_path / "normal.png" in result.files
        assert (tmp_path / "normal.png").exists()

        stage = Usd.Stage.Open(str(out))
        (mesh,) = _meshes(stage)
        primvars = UsdGeom.PrimvarsAPI(mesh)
        assert primvars.HasPrimvar("tangents")
        assert primvars.HasPrimvar("bitangents")
        np.testing.assert_allclose(
            np.array(primvars.GetPrimvar("tangents").Get()), [(1.0, 0.0, 0.0)] * 3, atol=1e-6
        )
        np.testing.assert_allclose(
            np.array(primvars.GetPrimvar("bitangents").Get()), [(0.0, 1.0, 0.0)] * 3, atol=1e-6
        )

        textures = [
            UsdShade.Shader(prim)
            for prim in Usd.PrimRange(stage.GetPrimAtPath("/Materials"))
            if prim.IsA(UsdShade.Shader)
            and UsdShade.Shader(prim).GetIdAttr().Get() == "UsdUVTexture"
        ]
        assert len(textures) == 1
        assert textures[0].GetInput("file").Get().path == "./normal.png"
        assert textures[0].GetInput("sourceColorSpace").Get() == "raw"


class TestConvertScene:
    def test_keyword_like_names_round_trip(self, builder, tmp_path):
        material = builder.add_material("class")
        add_triangle(builder, material)
        builder.gltf.nodes[0].name = "def"
        builder.gltf.meshes[0].name = "over"
        out = tmp_path / "keywords.usda"
        convert_file(builder.load(tmp_path), out, ConversionOptions(single_file=True))
        stage = Usd.Stage.Open(str(out))
        (mesh,) = _meshes(stage)
        assert mesh.GetPath() == Sdf.Path("/Geom/def/over/submesh")
        assert _bound_material(mesh.GetPrim()) == "/Materials/UsdPreviewSurface/class"
    def test_variants(self, variants_asset, tmp_path):
        out = tmp_path / "variants.usda"
        convert_file(variants_asset, out)
        stage = Usd.Stage.Open(str(out))
        variant_set = stage.GetPrimAtPath("/Geom").GetVariantSets().GetVariantSet(VARIANT_SET_NAME)
        assert sorted(variant_set.GetVariantNames()) == ["blue_paint", "red_paint"]
        assert variant_set.GetVariantSelection() == "red_paint"
        (mesh,) = _meshes(stage)
        assert _bound_material(mesh.GetPrim()) == "/Materials/UsdPreviewSurface/A"
        variant_set.SetVariantSelection("blue_paint")
        (mesh,) = _meshes(stage)
        assert _bound_material(mesh.GetPrim()) == "/Materials/UsdPreviewSurface/B"

    def test_default_variant(self, variants_asset, tmp_path):
        out = tmp_path / "variants.usda"
        convert_file(variants_asset, out, ConversionOptions(default_material_variant=1))
        stage = Usd.Stage.Open(str(out))
        variant_set = stage.GetPrimAtPath("/Geom").GetVariantSets().GetVariantSet(VARIANT_SET_NAME)
        assert variant_set.GetVariantSelection() == "blue_paint"

    def test_default_variant_out_of_range(self, variants_asset, tmp_path):
        out = tmp_path / "variants.usda"
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            convert_file(variants_asset, out, ConversionOptions(default_material_variant=5))
        assert "W05" in _codes(w)
        stage = Usd.Stage.Open(str(out))
        variant_set = stage.GetPrimAtPath("/Geom").GetVariantSets().GetVariantSet(VARIANT_SET_NAME)
        assert variant_set.GetVariantSelection() == "red_paint"

    def test_line_strip_skipped(self, line_strip_asset, tmp_path):
        out = tmp_path / "mixed.usda"
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            assert convert(line_strip_asset, out)
        assert "W01" in _codes(w)
        assert len(_meshes(Usd.Stage.Open(str(out)))) == 1

    def test_warn_as_error(self, line_strip_asset, tmp_path):
        policy = WarningPolicy(warn_as_error=frozenset({"W01"}))
        with pytest.raises(DiagnosticError, match=r"\[W01\]"):
            convert_file(line_strip_asset, tmp_path / "mixed.usda", policy=policy)
        assert not (tmp_path / "mixed.usda").exists()

    def test_instanced_mesh(self, builder, tmp_path):
        mesh = add_triangle(builder)
        builder.add_node(name="tri", mesh=mesh, translation=[2.0, 0.0, 0.0])
        out = tmp_path / "twice.usda"
        result = convert_file(builder.save(tmp_path / "twice.glb"), out)
        assert result.mesh_count == 1
        stage = Usd.Stage.Open(str(out))
        paths = sorted(str(m.GetPath()) for m in _meshes(stage))
        assert paths == ["/Geom/tri/triangle/submesh", "/Geom/tri_1/triangle/submesh"]
        assert stage.GetPrimAtPath("/Geom/tri_1/triangle").HasAuthoredReferences()

    def test_node_transforms(self, builder, tmp_path):
        builder.add_node(name="moved", translation=[1.0, 2.0, 3.0], scale=[2.0, 2.0, 2.0])
        builder.add_node(name="matrix", matrix=[1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1, 0, 4, 5, 6, 1])
        out = tmp_path / "xforms.usda"
        convert_file(builder.save(tmp_path / "xforms.glb"), out)
        stage = Usd.Stage.Open(str(out))
        moved = UsdGeom.Xformable(stage.GetPrimAtPath("/Geom/moved"))
        op_names = [op.GetOpName() for op in moved.GetOrderedXformOps()]
        assert op_names == ["xformOp:translate", "xformOp:scale"]
        matrix = UsdGeom.Xformable(stage.GetPrimAtPath("/Geom/matrix"))
        world = matrix.ComputeLocalToWorldTransform(Usd.TimeCode.Default())
        assert tuple(world.ExtractTranslation()) == pytest.approx((4.0, 5.0, 6.0))

    def test_node_cycle(self, builder, tmp_path):
        node = builder.add_node(name="loop")
        builder.gltf.nodes[node].children = [node]
        with pytest.raises(InputError, match="cycle"):
            convert_file(builder.save(tmp_path / "loop.glb"), tmp_path / "loop.usda")

    def test_multiple_scenes(self, builder, tmp_path):
        builder.add_node(name="a")
        second = builder.add_node(name="b", root=False)
        builder.gltf.scenes.append(pygltflib.Scene(nodes=[second]))
        out = tmp_path / "scenes.usda"
        convert_file(builder.save(tmp_path / "scenes.glb"), out)
        stage = Usd.Stage.Open(str(out))
        assert stage.GetPrimAtPath("/Geom/scene/a")
        assert stage.GetPrimAtPath("/Geom/scene_1/b")

    def test_lights(self, builder, tmp_path):
        builder.use_extension("KHR_lights_punctual")
        builder.gltf.extensions["KHR_lights_punctual"] = {
            "lights": [
                {"type": "spot", "name": "spot", "intensity": 5.0, "spot": {"outerConeAngle": 0.5}},
                {"type": "directional", "name": "sun"},
            ]
        }
        builder.add_node(name="spot_node", extensions={"KHR_lights_punctual": {"light": 0}})
        builder.add_node(name="sun_node", extensions={"KHR_lights_punctual": {"light": 1}})
        out = tmp_path / "lights.usda"
        convert_file(builder.save(tmp_path / "lights.glb"), out)
        stage = Usd.Stage.Open(str(out))
        spot = stage.GetPrimAtPath("/Geom/spot_node/spot")
        assert spot.IsA(UsdLux.SphereLight)
        assert UsdLux.SphereLight(spot).GetIntensityAttr().Get() == pytest.approx(5.0)
        cone_angle = UsdLux.ShapingAPI(spot).GetShapingConeAngleAttr().Get()
        assert cone_angle == pytest.approx(np.degrees(0.5))
        assert stage.GetPrimAtPath("/Geom/sun_node/sun").IsA(UsdLux.DistantLight)

    def test_camera(self, builder, tmp_path):
        builder.gltf.cameras.append(
            pygltflib.Camera(
                name="view",
                type="perspective",
                perspective=pygltflib.Perspective(aspectRatio=1.5, yfov=0.8, znear=0.1, zfar=100.0),
            )
        )
        builder.add_node(name="eye", camera=0, translation=[0.0, 0.0, 5.0])
        out = tmp_path / "camera.usda"
        convert_file(builder.save(tmp_path / "camera.glb"), out)
        stage = Usd.Stage.Open(str(out))
        camera = UsdGeom.Camera(stage.GetPrimAtPath("/Geom/eye/view"))
        assert camera.GetProjectionAttr().Get() == UsdGeom.Tokens.perspective
        assert tuple(camera.GetClippingRangeAttr().Get()) == pytest.approx((0.1, 100.0))
        assert not camera.GetXformOpOrderAttr().HasAuthoredValue()


class TestApi:
    def test_convert_reports_failure(self, tmp_path, caplog):
        assert convert(tmp_path / "missing.glb", tmp_path / "out.usda") is False
        assert "failed" in caplog.text

    def test_open_gltf_stage_writes_nothing(self, normal_mask_asset, tmp_path):
        before = sorted(tmp_path.iterdir())
        stage = open_gltf_stage(normal_mask_asset, ConversionOptions(emit_mtlx=True))
        assert sorted(tmp_path.iterdir()) == before
        assert len(_meshes(stage)) == 1
        assert UsdShade.Material(stage.GetPrimAtPath("/Materials/MaterialX/Materials/masked"))

    def test_open_gltf_stage_extracts_into_image_dir(self, builder, tmp_path):
        texture = builder.add_texture(builder.add_image(png_bytes(), name="leaf"))
        add_triangle(builder, builder.add_material("leafy", base_color_texture=texture))
        source = builder.save(tmp_path / "leaf.glb")
        images = tmp_path / "images"
        stage = open_gltf_stage(source, image_dir=images)
        assert (images / "leaf.png").exists()
        textures = [
            UsdShade.Shader(prim) for prim in stage.Traverse()
            if prim.IsA(UsdShade.Shader)
            and UsdShade.Shader(prim).GetIdAttr().Get() == "UsdUVTexture"
        ]
        assert len(textures) == 1
        assert textures[0].GetInput("file").Get().path == str(images / "leaf.png")
