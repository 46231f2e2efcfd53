"""guc: convert glTF 2.0 assets to USD with UsdPreviewSurface and MaterialX shading."""

__version__ = "0.1.0"

from guc.api import convert, convert_file, open_gltf_stage  # noqa: E402
from guc.options import ConversionOptions  # noqa: E402

__all__ = ["ConversionOptions", "__version__", "convert", "convert_file", "open_gltf_stage"]
