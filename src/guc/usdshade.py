"""Authoring shading graphs as UsdShade prims."""

from __future__ import annotations

from typing import Any

from pxr import Gf, Sdf, Usd, UsdShade

from guc.shading import Representation, ShadingGraph, ShadingNode, default_nodedef

SDF_TYPES: dict[str, Any] = {
    "float": Sdf.ValueTypeNames.Float,
    "integer": Sdf.ValueTypeNames.Int,
    "boolean": Sdf.ValueTypeNames.Bool,
    "color3": Sdf.ValueTypeNames.Color3f,
    "color4": Sdf.ValueTypeNames.Color4f,
    "vector2": Sdf.ValueTypeNames.Float2,
    "vector3": Sdf.ValueTypeNames.Float3,
    "vector4": Sdf.ValueTypeNames.Float4,
    "string": Sdf.ValueTypeNames.String,
    "filename": Sdf.ValueTypeNames.Asset,
    "token": Sdf.ValueTypeNames.Token,
    "surfaceshader": Sdf.ValueTypeNames.Token,
}

_VECTOR_TYPES = {
    "color3": Gf.Vec3f,
    "vector3": Gf.Vec3f,
    "color4": Gf.Vec4f,
    "vector4": Gf.Vec4f,
    "vector2": Gf.Vec2f,
}


def to_usd_value(type: str, value: Any) -> Any:
    if type in _VECTOR_TYPES:
        return _VECTOR_TYPES[type](*value)
    if type == "float":
        return float(value)
    if type == "integer":
        return int(value)
    if type == "boolean":
        return bool(value)
    if type == "filename":
        return Sdf.AssetPath(value)
    return str(value)


def _define_shader(
    stage: Usd.Stage, path: Sdf.Path, node: ShadingNode, shader_id: str
) -> UsdShade.Shader:
    shader = UsdShade.Shader.Define(stage, path)
    shader.CreateIdAttr(shader_id)
    for name, type in node.outputs.items():
        shader.CreateOutput(name, SDF_TYPES[type])
    return shader


def _author_inputs(
    node: ShadingNode, shader: UsdShade.Shader, shaders: dict[str, UsdShade.Shader]
) -> None:
    for name, value in node.inputs.items():
        port = shader.CreateInput(name, SDF_TYPES[value.type])
        if value.connection is not None:
            port.ConnectToSource(shaders[value.connection.node].GetOutput(value.connection.output))
        else:
            port.Set(to_usd_value(value.type, value.value))
        if value.colorspace:
            port.GetAttr().SetColorSpace(value.colorspace)


def author_material(stage: Usd.Stage, path: Sdf.Path, graph: ShadingGraph) -> UsdShade.Material:
    """Define ``graph`` as a Material prim at ``path``."""
    if graph.representation is Representation.PREVIEW:
        return _author_preview(stage, path, graph)
    return _author_materialx(stage, path, graph)


def _author_preview(stage: Usd.Stage, path: Sdf.Path, graph: ShadingGraph) -> UsdShade.Material:
    material = UsdShade.Material.Define(stage, path)
    shaders = {
        node.name: _define_shader(stage, path.AppendChild(node.name), node, node.category)
        for node in graph.nodes.values()
    }
    for node in graph.nodes.values():
        _author_inputs(node, shaders[node.name], shaders)
    material.CreateSurfaceOutput().ConnectToSource(shaders[graph.surface].GetOutput("surface"))
    return material


def _author_materialx(stage: Usd.Stage, path: Sdf.Path, graph: ShadingGraph) -> UsdShade.Material:
    """Material holding the node graph ``NG_<name>`` and the gltf_pbr shader, as UsdMtlx would."""
    material = UsdShade.Material.Define(stage, path)
    graph_path = path.AppendChild(f"NG_{graph.material_name}")
    node_graph = UsdShade.NodeGraph.Define(stage, graph_path)

    shaders: dict[str, UsdShade.Shader] = {}
    for node in graph.nodes.values():
        parent = path if node.name == graph.surface else graph_path
        shader_id = node.nodedef or default_nodedef(node.category, node.type)
        shaders[node.name] = _define_shader(stage, parent.AppendChild(node.name), node, shader_id)

    for node in graph.nodes.values():
        if node.name != graph.surface:
            _author_inputs(node, shaders[node.name], shaders)

    surface = graph.surface_node
    for name, value in surface.inputs.items():
        port = shaders[surface.name].CreateInput(name, SDF_TYPES[value.type])
        if value.connection is None:
            port.Set(to_usd_value(value.type, value.value))
            continue
        upstream = value.connection.node
        output_name = f"out_{upstream}"
        output = node_graph.GetOutput(output_name)
        if not output:
            output = node_graph.CreateOutput(output_name, SDF_TYPES[graph.nodes[upstream].type])
            output.ConnectToSource(shaders[upstream].GetOutput(value.connection.output))
        port.ConnectToSource(output)

    material.CreateSurfaceOutput("mtlx").ConnectToSource(shaders[surface.name].GetOutput("out"))
    return material
