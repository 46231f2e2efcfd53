"""Entry points: file conversion and the in-memory stage adapter."""

from __future__ import annotations

import logging
from pathlib import Path

from pxr import Usd

from guc.converter import ConversionResult, Converter
from guc.document import SourceDocument, load_document
from guc.errors import GucError
from guc.options import ConversionOptions
from guc.warning_policy import WarningPolicy

logger = logging.getLogger(__name__)


def _document(source: Path | str | SourceDocument, policy: WarningPolicy | None) -> SourceDocument:
    if isinstance(source, SourceDocument):
        return source
    return load_document(Path(source), policy=policy)


def convert_file(
    source: Path | str | SourceDocument,
    usd_path: Path | str,
    options: ConversionOptions | None = None,
    *,
    policy: WarningPolicy | None = None,
) -> ConversionResult:
    """Convert a glTF asset to ``usd_path``; raises ``GucError`` subclasses on fatal problems."""
    doc = _document(source, policy)
    return Converter(doc, Path(usd_path), options, policy=policy).run()


def convert(
    source: Path | str | SourceDocument,
    usd_path: Path | str,
    options: ConversionOptions | None = None,
    *,
    policy: WarningPolicy | None = None,
) -> bool:
    """Convert a glTF asset to ``usd_path`` and report success.

    Recoverable problems surface only as ``GucWarning`` diagnostics; fatal ones
    are logged and make the call return False.
    """
    try:
        convert_file(source, usd_path, options, policy=policy)
    except GucError as e:
        logger.error("Conversion of %s failed: %s", source, e)
        return False
    return True


def open_gltf_stage(
    path: Path | str,
    options: ConversionOptions | None = None,
    *,
    policy: WarningPolicy | None = None,
    image_dir: Path | str | None = None,
) -> Usd.Stage:
    """Open a glTF asset as a single-layer in-memory stage.

    No USD or MaterialX file is written: MaterialX is inlined as UsdShade prims
    and external images are referenced where they are. Embedded images are
    extracted into ``image_dir`` when given; otherwise into a temporary
    directory that is removed at interpreter exit, so the stage can keep
    loading its textures while the process runs.
    """
    options = options or ConversionOptions()
    options = options.model_copy(update={"single_file": True})
    converter = Converter(
        load_document(Path(path), policy=policy),
        None,
        options,
        policy=policy,
        image_dir=Path(image_dir) if image_dir is not None else None,
    )
    try:
        converter.run()
    except GucError:
        converter.resolver.cleanup()
        raise
    return converter.stage
