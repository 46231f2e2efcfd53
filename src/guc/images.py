"""Texture image resolution: reading, inspection and colorspace-aware copies."""

from __future__ import annotations

import atexit
import io
import logging
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import unquote

from PIL import Image, UnidentifiedImageError

from guc.document import SourceDocument, decode_data_uri
from guc.errors import ImageError, InputError, OutputError
from guc.naming import NameRegistry, make_file_name

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"

# Pillow mode -> (channels, bits per channel)
_MODE_LAYOUT: dict[str, tuple[int, int]] = {
    "1": (1, 8),
    "L": (1, 8),
    "LA": (2, 8),
    "La": (2, 8),
    "P": (3, 8),
    "PA": (4, 8),
    "RGB": (3, 8),
    "RGBA": (4, 8),
    "RGBa": (4, 8),
    "RGBX": (3, 8),
    "CMYK": (4, 8),
    "YCbCr": (3, 8),
    "I;16": (1, 16),
    "I;16B": (1, 16),
    "I;16L": (1, 16),
    "I": (1, 32),
    "F": (1, 32),
}

# Temporary directories of extracted images, removed at interpreter exit at the latest.
_SCRATCH_DIRS: set[Path] = set()


@atexit.register
def _remove_scratch_dirs() -> None:
    for path in list(_SCRATCH_DIRS):
        shutil.rmtree(path, ignore_errors=True)
    _SCRATCH_DIRS.clear()


class ImageUsage(Enum):
    """How a material input interprets texel values."""

    COLOR = "color"
    NORMAL = "normal"
    DATA = "data"

    @property
    def colorspace(self) -> str:
        return "sRGB" if self is ImageUsage.COLOR else "raw"


@dataclass(frozen=True)
class ImageHandle:
    """One physical image file serving one colorspace interpretation."""

    image_index: int
    colorspace: str
    path: Path
    asset_path: str
    channels: int
    bits_per_channel: int

    @property
    def is_srgb_in_usd(self) -> bool:
        """Hydra Storm decodes 8-bit RGB(A) files as sRGB whatever the authored colorspace says."""
        return self.channels in (3, 4) and self.bits_per_channel == 8


@dataclass(frozen=True)
class _SourceImage:
    data: bytes
    extension: str
    stem: str | None
    channels: int
    bits_per_channel: int
    external_path: Path | None


class ImageResolver:
    """Resolves glTF images to files next to the output, one copy per colorspace.

    With ``output_dir=None`` external images are referenced where they are and
    embedded ones are extracted into ``scratch_dir``, or into a temporary
    directory that lives until ``cleanup()`` or interpreter exit.
    """

    def __init__(
        self,
        doc: SourceDocument,
        registry: NameRegistry,
        output_dir: Path | None,
        scratch_dir: Path | None = None,
    ) -> None:
        self._doc = doc
        self._registry = registry
        self._output_dir = output_dir
        self._scratch_dir = scratch_dir
        self._owns_scratch = False
        self._sources: dict[int, _SourceImage] = {}
        self._failures: dict[int, str] = {}
        self._handles: dict[tuple[int, str], ImageHandle] = {}
        self._usages: dict[int, set[ImageUsage]] = {}

    def usages(self, image_index: int) -> frozenset[ImageUsage]:
        return frozenset(self._usages.get(image_index, ()))

    @property
    def written_files(self) -> list[Path]:
        if self._output_dir is None:
            return []
        return [handle.path for handle in self._handles.values()]

    def resolve(self, image_index: int, usage: ImageUsage) -> ImageHandle:
        """Return the file serving ``usage`` for image ``image_index``.

        Repeated requests with a compatible usage return the same handle; a
        request needing another colorspace produces a second file.
        Raises ``ImageError`` if the image cannot be used.
        """
        key = (image_index, usage.colorspace)
        if key in self._handles:
            self._usages[image_index].add(usage)
            return self._handles[key]

        source = self._load_source(image_index)
        handle = self._materialize(image_index, source, usage.colorspace)
        self._handles[key] = handle
        self._usages.setdefault(image_index, set()).add(usage)
        logger.debug("Image %d (%s) -> %s", image_index, usage.colorspace, handle.path)
        return handle

    def _load_source(self, image_index: int) -> _SourceImage:
        if image_index in self._sources:
            return self._sources[image_index]
        if image_index in self._failures:
            raise ImageError(self._failures[image_index])
        try:
            source = self._read_source(image_index)
        except ImageError as e:
            self._failures[image_index] = str(e)
            raise
        self._sources[image_index] = source
        return source

    def _read_source(self, image_index: int) -> _SourceImage:
        if not self._doc.has_element("images", image_index):
            raise ImageError(f"Image index {image_index} does not exist")
        image = self._doc.element("images", image_index)

        external_path: Path | None = None
        stem = image.name
        try:
            if image.uri is not None and image.uri.startswith("data:"):
                data = decode_data_uri(image.uri)
            elif image.uri is not None:
                if "://" in image.uri:
                    raise ImageError(f"Remote image URIs are not supported: {image.uri}")
                external_path = self._doc.base_dir / unquote(image.uri)
                stem = external_path.name
                data = external_path.read_bytes()
            elif image.bufferView is not None:
                data = self._doc.buffer_view_bytes(image.bufferView)
            else:
                raise ImageError(f"Image {image_index} has neither uri nor bufferView")
        except (InputError, OSError) as e:
            raise ImageError(f"Cannot read image {image_index}: {e}") from e

        if data.startswith(PNG_SIGNATURE):
            extension = ".png"
        elif data.startswith(JPEG_SIGNATURE):
            extension = ".jpg"
        else:
            raise ImageError(f"Image {image_index} is neither PNG nor JPEG")

        channels, bits = _inspect(data, image_index)
        return _SourceImage(data, extension, stem, channels, bits, external_path)

    def _materialize(self, image_index: int, source: _SourceImage, colorspace: str) -> ImageHandle:
        if self._output_dir is None and source.external_path is not None:
            path = source.external_path.resolve()
            return ImageHandle(
                image_index, colorspace, path, str(path), source.channels, source.bits_per_channel
            )

        directory = self._output_dir if self._output_dir is not None else self._scratch()
        file_name = make_file_name(self._registry, source.stem, source.extension)
        path = directory / file_name
        try:
            path.write_bytes(source.data)
        except OSError as e:
            raise OutputError(f"Cannot write image {path}: {e}") from e
        asset_path = f"./{file_name}" if self._output_dir is not None else str(path)
        return ImageHandle(
            image_index, colorspace, path, asset_path, source.channels, source.bits_per_channel
        )

    def cleanup(self) -> None:
        """Remove the temporary directory of extracted images, if this resolver made one."""
        if not self._owns_scratch or self._scratch_dir is None:
            return
        shutil.rmtree(self._scratch_dir, ignore_errors=True)
        _SCRATCH_DIRS.discard(self._scratch_dir)
        logger.debug("Removed image directory %s", self._scratch_dir)
        self._scratch_dir = None
        self._owns_scratch = False

    def _scratch(self) -> Path:
        if self._scratch_dir is None:
            self._scratch_dir = Path(tempfile.mkdtemp(prefix="guc_images_"))
            self._owns_scratch = True
            _SCRATCH_DIRS.add(self._scratch_dir)
            return self._scratch_dir
        try:
            self._scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputError(f"Cannot create image directory {self._scratch_dir}: {e}") from e
        return self._scratch_dir


def _inspect(data: bytes, image_index: int) -> tuple[int, int]:
    """Return (channels, bits per channel) of an encoded PNG/JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            mode = img.mode
            has_transparency = "transparency" in img.info
    except (UnidentifiedImageError, OSError) as e:
        raise ImageError(f"Cannot decode image {image_index}: {e}") from e

    channels, bits = _MODE_LAYOUT.get(mode, (4, 8))
    if mode == "P" and has_transparency:
        channels = 4
    if data.startswith(PNG_SIGNATURE) and len(data) > 24:
        # IHDR bit depth; Pillow reports 16-bit RGB(A) as 8-bit modes
        bits = max(bits, data[24]) if mode != "P" else 8
    return channels, bits
