"""Click CLI entry point for the guc converter."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from click.core import ParameterSource

from guc import __version__
from guc.api import convert_file
from guc.errors import GucError
from guc.manifest import build_manifest
from guc.options import load_options, make_options
from guc.warning_policy import WarningPolicy, parse_code_list


def _build_warning_policy(
    warn_as_error: str | None, suppress_warning: str | None
) -> WarningPolicy | None:
    """Parse CLI warning options into a WarningPolicy, or None if unset."""
    if warn_as_error is None and suppress_warning is None:
        return None
    try:
        wae = parse_code_list(warn_as_error) if warn_as_error else frozenset()
        sup = parse_code_list(suppress_warning) if suppress_warning else frozenset()
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    return WarningPolicy(warn_as_error=wae, suppress=sup)


@click.group()
@click.version_option(version=__version__, prog_name="guc")
def main() -> None:
    """guc - convert glTF 2.0 assets to USD."""


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--emit-mtlx", is_flag=True, default=False, help="Also emit MaterialX materials.")
@click.option(
    "--mtlx-as-usdshade",
    is_flag=True,
    default=False,
    help="Write MaterialX materials as UsdShade prims instead of a .mtlx sidecar.",
)
@click.option(
    "--explicit-colorspace-transforms",
    is_flag=True,
    default=False,
    help="Decode sRGB textures with MaterialX math nodes instead of colorspace tags.",
)
@click.option(
    "--gltf-pbr-impl",
    type=click.Choice(["runtime", "file", "flattened"]),
    default="runtime",
    show_default=True,
    help="How the gltf_pbr node implementation is provided.",
)
@click.option(
    "--hdstorm-compat",
    is_flag=True,
    default=False,
    help="Author MaterialX the way Hydra Storm renders it like the glTF viewer.",
)
@click.option(
    "--default-material-variant",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Index of the material variant selected by default.",
)
@click.option(
    "--single-file",
    is_flag=True,
    default=False,
    help="Write geometry and materials into one layer.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with conversion options; flags override its values.",
)
@click.option(
    "--warn-as-error",
    "warn_as_error",
    type=str,
    default=None,
    help="Comma-separated W-codes to treat as errors (e.g. W01,W03), or 'all'.",
)
@click.option(
    "--suppress-warning",
    "suppress_warning",
    type=str,
    default=None,
    help="Comma-separated W-codes to suppress (e.g. W04).",
)
@click.option(
    "--emit-manifest",
    "emit_manifest",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write a JSON manifest of the produced files to this path.",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log conversion progress.")
def convert(
    input_file: Path,
    output: Path,
    emit_mtlx: bool = False,
    mtlx_as_usdshade: bool = False,
    explicit_colorspace_transforms: bool = False,
    gltf_pbr_impl: str = "runtime",
    hdstorm_compat: bool = False,
    default_material_variant: int = 0,
    single_file: bool = False,
    config_path: Path | None = None,
    warn_as_error: str | None = None,
    suppress_warning: str | None = None,
    emit_manifest: Path | None = None,
    verbose: bool = False,
) -> None:
    """Convert a .gltf/.glb asset to .usd, .usda, .usdc or .usdz."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)

    flags = {
        "emit_mtlx": emit_mtlx,
        "mtlx_as_usdshade": mtlx_as_usdshade,
        "explicit_colorspace_transforms": explicit_colorspace_transforms,
        "gltf_pbr_impl": gltf_pbr_impl,
        "hdstorm_compat": hdstorm_compat,
        "default_material_variant": default_material_variant,
        "single_file": single_file,
    }
    # only flags given on the command line override the config file
    ctx = click.get_current_context()
    overrides = {
        key: value
        for key, value in flags.items()
        if ctx.get_parameter_source(key) is not ParameterSource.DEFAULT
    }

    try:
        if config_path is not None:
            options = load_options(config_path, **overrides)
        else:
            options = make_options(**overrides)
        result = convert_file(input_file, output, options, policy=warning_policy)
        if emit_manifest is not None:
            manifest = build_manifest(
                input_path=input_file,
                output_path=output,
                files=result.files,
                options=options.model_dump(),
                command_args=sys.argv[1:],
            )
            emit_manifest.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        click.echo(f"Converted: {output}")
    except GucError as e:
        raise click.ClickException(str(e)) from e
