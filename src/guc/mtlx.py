"""MaterialX documents for the gltf_pbr shading graphs."""

from __future__ import annotations

import functools
import logging
import shutil
from pathlib import Path
from typing import Any

import MaterialX as mx

from guc.errors import OutputError, UnsupportedFeatureError
from guc.options import ConversionOptions
from guc.shading import ShadingGraph, ShadingNode
from guc.warning_policy import WarningPolicy, emit_warning

logger = logging.getLogger(__name__)

GLTF_PBR_LIBRARY = "libraries/bxdf/gltf_pbr.mtlx"
GLTF_PBR_FILE_NAME = "gltf_pbr.mtlx"

# Nodes whose nodedef cannot be inferred from their output type alone.
_EXPLICIT_NODEDEF_CATEGORIES = frozenset({"extract", "convert"})


@functools.lru_cache(maxsize=1)
def load_standard_libraries() -> mx.Document:
    """The MaterialX data libraries shipped with the installed bindings."""
    stdlib = mx.createDocument()
    try:
        mx.loadLibraries(mx.getDefaultDataLibraryFolders(), mx.getDefaultDataSearchPath(), stdlib)
    except (mx.Exception, AttributeError) as e:
        raise UnsupportedFeatureError(f"MaterialX data libraries unavailable: {e}") from e
    if stdlib.getNodeDef("ND_gltf_pbr_surfaceshader") is None:
        raise UnsupportedFeatureError("MaterialX data libraries do not define gltf_pbr")
    return stdlib


def _drop_unbound_inputs(node_graph: Any) -> None:
    """Remove inputs left without value or connection, so node defaults apply.

    Flattening leaves such inputs behind where the gltf_pbr interface input they
    were bound to has no default, e.g. ``attenuation_distance``.
    """
    for node in node_graph.getNodes():
        for port in node.getInputs():
            bound = (
                port.getValueString()
                or port.getNodeName()
                or port.getNodeGraphString()
                or port.getOutputString()
                or port.getInterfaceName()
            )
            if not bound:
                logger.debug("Dropping unbound input %s.%s", node.getName(), port.getName())
                node.removeInput(port.getName())


def format_value(value: Any, type: str) -> str:
    if type == "boolean":
        return "true" if value else "false"
    if type == "integer":
        return str(int(value))
    if type in ("string", "filename"):
        return str(value)
    if isinstance(value, (tuple, list)):
        return ", ".join(f"{float(v):.9g}" for v in value)
    return f"{float(value):.9g}"


class MaterialXWriter:
    """Accumulates one MaterialX document for all materials of a conversion."""

    def __init__(self, options: ConversionOptions, *, policy: WarningPolicy | None = None) -> None:
        self.options = options
        self.policy = policy
        self.doc = mx.createDocument()
        if not options.explicit_transforms:
            self.doc.setColorSpace("lin_rec709")
        self._names: list[str] = []

    @property
    def material_names(self) -> list[str]:
        return list(self._names)

    def add_material(self, graph: ShadingGraph) -> None:
        if self.options.gltf_pbr_impl == "flattened":
            try:
                self._add_flattened(graph)
                self._names.append(graph.material_name)
                return
            except UnsupportedFeatureError as e:
                emit_warning(
                    "W06", f"{e}; keeping the gltf_pbr node", policy=self.policy,
                    entity=f"material {graph.material_name}",
                )
        self._add_referenced(graph)
        self._names.append(graph.material_name)

    def to_string(self) -> str:
        return mx.writeToXmlString(self.doc)

    def write(self, path: Path) -> list[Path]:
        """Write the document (and its gltf_pbr implementation in ``file`` mode)."""
        path = Path(path)
        written = []
        if self.options.gltf_pbr_impl == "file":
            written.extend(self._write_implementation(path.parent))
        self.validate()
        try:
            mx.writeToXmlFile(self.doc, str(path))
        except mx.Exception as e:
            raise OutputError(f"Cannot write MaterialX document {path}: {e}") from e
        written.append(path)
        logger.info("Wrote MaterialX document %s", path)
        return written

    def validate(self) -> bool:
        """Validate against the data libraries; problems are reported as W06."""
        try:
            stdlib = load_standard_libraries()
        except UnsupportedFeatureError as e:
            logger.debug("Skipping MaterialX validation: %s", e)
            return True
        check = mx.createDocument()
        check.copyContentFrom(self.doc)
        check.importLibrary(stdlib)
        result = check.validate()
        valid, message = result if isinstance(result, tuple) else (bool(result), "")
        if not valid:
            emit_warning(
                "W06",
                f"MaterialX document does not validate: {message.strip()}",
                policy=self.policy,
            )
        return valid

    # -- element construction --

    def _populate(self, target: Any, graph: ShadingGraph, *, include_surface: bool) -> None:
        for node in graph.nodes.values():
            if node.name == graph.surface and not include_surface:
                continue
            element = target.addNode(node.category, node.name, node.type)
            if node.category in _EXPLICIT_NODEDEF_CATEGORIES and node.nodedef:
                element.setNodeDefString(node.nodedef)
            for name, value in node.inputs.items():
                port = element.addInput(name, value.type)
                if value.connection is not None:
                    port.setNodeName(value.connection.node)
                else:
                    port.setValueString(format_value(value.value, value.type))
                if value.colorspace:
                    port.setColorSpace(value.colorspace)

    def _add_referenced(self, graph: ShadingGraph) -> None:
        node_graph = self.doc.addNodeGraph(f"NG_{graph.material_name}")
        self._populate(node_graph, graph, include_surface=False)
        surface: ShadingNode = graph.surface_node
        shader = self.doc.addNode(surface.category, surface.name, surface.type)
        for name, value in surface.inputs.items():
            port = shader.addInput(name, value.type)
            if value.connection is None:
                port.setValueString(format_value(value.value, value.type))
                continue
            upstream = value.connection.node
            output_name = f"out_{upstream}"
            if node_graph.getOutput(output_name) is None:
                output = node_graph.addOutput(output_name, graph.nodes[upstream].type)
                output.setNodeName(upstream)
            port.setNodeGraphString(node_graph.getName())
            port.setOutputString(output_name)
        self._add_surface_material(graph.material_name, shader.getName())

    def _add_flattened(self, graph: ShadingGraph) -> None:
        """Inline the gltf_pbr implementation graph into the material's node graph."""
        stdlib = load_standard_libraries()
        graph_name = f"NG_{graph.material_name}"
        scratch = mx.createDocument()
        scratch.importLibrary(stdlib)
        scratch_graph = scratch.addNodeGraph(graph_name)
        self._populate(scratch_graph, graph, include_surface=True)
        try:
            scratch_graph.flattenSubgraphs()
        except mx.Exception as e:
            raise UnsupportedFeatureError(f"cannot flatten gltf_pbr: {e}") from e
        _drop_unbound_inputs(scratch_graph)

        surfaces = [n for n in scratch_graph.getNodes() if n.getType() == "surfaceshader"]
        if len(surfaces) != 1:
            raise UnsupportedFeatureError(
                f"flattening gltf_pbr left {len(surfaces)} surface shader nodes"
            )
        inner = surfaces[0]

        node_graph = self.doc.addNodeGraph(graph_name)
        node_graph.copyContentFrom(scratch_graph)
        shader = self.doc.addNode(inner.getCategory(), f"SR_{graph.material_name}", "surfaceshader")
        for inner_input in inner.getInputs():
            port = shader.addInput(inner_input.getName(), inner_input.getType())
            upstream = inner_input.getNodeName()
            if not upstream:
                port.setValueString(inner_input.getValueString())
                continue
            output = node_graph.addOutput(f"out_{inner_input.getName()}", inner_input.getType())
            output.setNodeName(upstream)
            if inner_input.getOutputString():
                output.setOutputString(inner_input.getOutputString())
            port.setNodeGraphString(node_graph.getName())
            port.setOutputString(output.getName())
        node_graph.removeNode(inner.getName())
        self._add_surface_material(graph.material_name, shader.getName())

    def _add_surface_material(self, name: str, shader_name: str) -> None:
        material = self.doc.addNode("surfacematerial", name, "material")
        port = material.addInput("surfaceshader", "surfaceshader")
        port.setNodeName(shader_name)

    def _write_implementation(self, directory: Path) -> list[Path]:
        source = mx.getDefaultDataSearchPath().find(mx.FilePath(GLTF_PBR_LIBRARY))
        if not source.exists():
            emit_warning(
                "W06", f"{GLTF_PBR_LIBRARY} not found; gltf_pbr stays a runtime dependency",
                policy=self.policy,
            )
            return []
        target = directory / GLTF_PBR_FILE_NAME
        try:
            shutil.copyfile(source.asString(), target)
        except OSError as e:
            raise OutputError(f"Cannot write {target}: {e}") from e
        mx.prependXInclude(self.doc, GLTF_PBR_FILE_NAME)
        return [target]
