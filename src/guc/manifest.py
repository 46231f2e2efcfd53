"""JSON manifest describing the files of one conversion."""

from __future__ import annotations

import hashlib
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

from guc import __version__


def _sha256_of_file(path: Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _git_sha() -> str | None:
    """Return the git HEAD of the working directory, or None outside a checkout."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return result.stdout.strip() if result.returncode == 0 else None


def _file_entry(path: Path) -> dict:
    return {"path": str(path), "sha256": _sha256_of_file(path)}


def build_manifest(
    *,
    input_path: Path,
    output_path: Path,
    files: list[Path],
    options: dict | None = None,
    command_args: list[str] | None = None,
) -> dict:
    """Build a manifest dict for a finished conversion.

    Call after every file in ``files`` has been written.
    """
    manifest: dict = {
        "manifest_version": 1,
        "tool": {
            "name": "guc",
            "version": __version__,
            "python": sys.version.split()[0],
            "git_sha": _git_sha(),
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "input": _file_entry(input_path),
        "output": _file_entry(output_path),
        "files": [_file_entry(path) for path in files if path.exists()],
    }
    if options is not None:
        manifest["options"] = options
    if command_args is not None:
        manifest["command_args"] = command_args
    return manifest
