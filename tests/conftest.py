"""Shared fixtures: small glTF assets built in memory with pygltflib."""

from __future__ import annotations

import base64
import io
from pathlib import Path

import numpy as np
import pygltflib
import pytest
from PIL import Image

from guc.document import SourceDocument, load_document

TRIANGLE_POSITIONS = [(0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (0.0, 1.0, 0.0)]
TRIANGLE_NORMALS = [(0.0, 0.0, 1.0)] * 3
TRIANGLE_UVS = [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0)]


def png_bytes(
    mode: str = "RGBA", size: tuple[int, int] = (2, 2), color=(255, 0, 0, 255)
) -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


class GltfBuilder:
    """Accumulates a glTF document whose binary data lives in one buffer."""

    def __init__(self) -> None:
        self.gltf = pygltflib.GLTF2(
            asset=pygltflib.Asset(version="2.0", generator="guc tests"),
            scene=0,
            scenes=[pygltflib.Scene(nodes=[])],
            buffers=[pygltflib.Buffer(byteLength=0)],
        )
        self.blob = bytearray()

    def buffer_view(self, data: bytes, target: int | None = None) -> int:
        self.blob.extend(b"\x00" * (-len(self.blob) % 4))
        offset = len(self.blob)
        self.blob.extend(data)
        self.gltf.bufferViews.append(
            pygltflib.BufferView(buffer=0, byteOffset=offset, byteLength=len(data), target=target)
        )
        return len(self.gltf.bufferViews) - 1

    def accessor(self, values, type: str, component_type: int = pygltflib.FLOAT, **kwargs) -> int:
        dtype = {
            pygltflib.FLOAT: np.float32,
            pygltflib.UNSIGNED_SHORT: np.uint16,
            pygltflib.UNSIGNED_INT: np.uint32,
            pygltflib.UNSIGNED_BYTE: np.uint8,
        }[component_type]
        array = np.ascontiguousarray(np.asarray(values, dtype=dtype))
        view = self.buffer_view(array.tobytes())
        accessor = pygltflib.Accessor(
            bufferView=view, componentType=component_type, count=len(array), type=type, **kwargs
        )
        if type == "VEC3" and component_type == pygltflib.FLOAT:
            accessor.min = array.min(axis=0).tolist()
            accessor.max = array.max(axis=0).tolist()
        self.gltf.accessors.append(accessor)
        return len(self.gltf.accessors) - 1

    def primitive(
        self,
        positions,
        *,
        indices=None,
        normals=None,
        uvs=None,
        colors=None,
        material: int | None = None,
        mode: int = pygltflib.TRIANGLES,
        extensions: dict | None = None,
    ) -> pygltflib.Primitive:
        attributes = pygltflib.Attributes(POSITION=self.accessor(positions, "VEC3"))
        if normals is not None:
            attributes.NORMAL = self.accessor(normals, "VEC3")
        if uvs is not None:
            attributes.TEXCOORD_0 = self.accessor(uvs, "VEC2")
        if colors is not None:
            attributes.COLOR_0 = self.accessor(colors, "VEC4" if len(colors[0]) == 4 else "VEC3")
        index_accessor = None
        if indices is not None:
            index_accessor = self.accessor(indices, "SCALAR", pygltflib.UNSIGNED_SHORT)
        return pygltflib.Primitive(
            attributes=attributes,
            indices=index_accessor,
            material=material,
            mode=mode,
            extensions=extensions or {},
        )

    def add_mesh(self, primitives: list[pygltflib.Primitive], name: str | None = None) -> int:
        self.gltf.meshes.append(pygltflib.Mesh(name=name, primitives=primitives))
        return len(self.gltf.meshes) - 1

    def add_material(
        self,
        name: str | None = None,
        *,
        base_color=(1.0, 1.0, 1.0, 1.0),
        metallic: float = 1.0,
        roughness: float = 1.0,
        base_color_texture: int | None = None,
        **kwargs,
    ) -> int:
        pbr = pygltflib.PbrMetallicRoughness(
            baseColorFactor=list(base_color), metallicFactor=metallic, roughnessFactor=roughness
        )
        if base_color_texture is not None:
            pbr.baseColorTexture = pygltflib.TextureInfo(index=base_color_texture)
        material = pygltflib.Material(name=name, pbrMetallicRoughness=pbr, **kwargs)
        self.gltf.materials.append(material)
        return len(self.gltf.materials) - 1

    def add_image(self, data: bytes, name: str | None = None) -> int:
        view = self.buffer_view(data)
        self.gltf.images.append(pygltflib.Image(name=name, bufferView=view, mimeType="image/png"))
        return len(self.gltf.images) - 1

    def add_texture(self, image: int, sampler: int | None = None) -> int:
        self.gltf.textures.append(pygltflib.Texture(source=image, sampler=sampler))
        return len(self.gltf.textures) - 1

    def add_node(self, *, root: bool = True, **kwargs) -> int:
        self.gltf.nodes.append(pygltflib.Node(**kwargs))
        index = len(self.gltf.nodes) - 1
        if root:
            self.gltf.scenes[0].nodes.append(index)
        return index

    def use_extension(self, name: str) -> None:
        if name not in self.gltf.extensionsUsed:
            self.gltf.extensionsUsed.append(name)

    def save(self, path: Path) -> Path:
        self.gltf.buffers[0].byteLength = len(self.blob)
        if path.suffix == ".glb":
            self.gltf.buffers[0].uri = None
            self.gltf.set_binary_blob(bytes(self.blob))
            self.gltf.save_binary(str(path))
        else:
            encoded = base64.b64encode(bytes(self.blob)).decode("ascii")
            self.gltf.buffers[0].uri = f"data:application/octet-stream;base64,{encoded}"
            self.gltf.save_json(str(path))
        return path

    def load(self, tmp_path: Path, name: str = "asset.glb", policy=None) -> SourceDocument:
        return load_document(self.save(tmp_path / name), policy=policy)


@pytest.fixture
def builder() -> GltfBuilder:
    return GltfBuilder()


def add_triangle(
    builder: GltfBuilder, material: int | None = None, *, uvs: bool = True, **kwargs
) -> int:
    """One node with the reference triangle; returns the mesh index."""
    prim = builder.primitive(
        TRIANGLE_POSITIONS,
        normals=TRIANGLE_NORMALS,
        uvs=TRIANGLE_UVS if uvs else None,
        material=material,
        **kwargs,
    )
    mesh = builder.add_mesh([prim], name="triangle")
    builder.add_node(name="tri", mesh=mesh)
    return mesh


@pytest.fixture
def red_triangle(builder: GltfBuilder, tmp_path: Path) -> Path:
    material = builder.add_material(
        "red", base_color=(1.0, 0.0, 0.0, 1.0), metallic=0.0, roughness=1.0
    )
    add_triangle(builder, material)
    return builder.save(tmp_path / "red.glb")


@pytest.fixture
def normal_mask_asset(builder: GltfBuilder, tmp_path: Path) -> Path:
    image = builder.add_image(png_bytes("RGB", color=(128, 128, 255)), name="normal")
    texture = builder.add_texture(image)
    material = builder.add_material(
        "masked",
        normalTexture=pygltflib.NormalMaterialTexture(index=texture, scale=1.0),
        alphaMode=pygltflib.MASK,
        alphaCutoff=0.3,
    )
    add_triangle(builder, material)
    return builder.save(tmp_path / "masked.glb")


@pytest.fixture
def variants_asset(builder: GltfBuilder, tmp_path: Path) -> Path:
    material_a = builder.add_material("A", base_color=(1.0, 0.0, 0.0, 1.0))
    material_b = builder.add_material("B", base_color=(0.0, 0.0, 1.0, 1.0))
    builder.use_extension("KHR_materials_variants")
    builder.gltf.extensions["KHR_materials_variants"] = {
        "variants": [{"name": "red paint"}, {"name": "blue paint"}]
    }
    mappings = {
        "KHR_materials_variants": {
            "mappings": [
                {"material": material_a, "variants": [0]},
                {"material": material_b, "variants": [1]},
            ]
        }
    }
    add_triangle(builder, material_a, extensions=mappings)
    return builder.save(tmp_path / "variants.glb")


@pytest.fixture
def line_strip_asset(builder: GltfBuilder, tmp_path: Path) -> Path:
    lines = builder.primitive(
        [(0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (1.0, 1.0, 0.0)], mode=pygltflib.LINE_STRIP
    )
    triangle = builder.primitive(TRIANGLE_POSITIONS, normals=TRIANGLE_NORMALS)
    mesh = builder.add_mesh([lines, triangle], name="mixed")
    builder.add_node(name="mixed", mesh=mesh)
    return builder.save(tmp_path / "mixed.glb")
