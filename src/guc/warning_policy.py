"""Coded diagnostics for recoverable conversion problems.

Entity-scoped failures (one primitive, one image, one material input) never abort
a conversion; they are reported here and the entity falls back to a default.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

from guc.errors import DiagnosticError

CODE_DESCRIPTIONS: dict[str, str] = {
    "W01": "mesh primitive skipped",
    "W02": "compressed primitive could not be decoded",
    "W03": "texture image unavailable, constant used instead",
    "W04": "unsupported extension or feature ignored",
    "W05": "invalid reference ignored",
    "W06": "shading node graph degraded",
}

KNOWN_CODES: frozenset[str] = frozenset(CODE_DESCRIPTIONS)


class GucWarning(UserWarning):
    """Warning with a machine-readable code."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(f"[{code}] {message}")


@dataclass(frozen=True)
class WarningPolicy:
    """Per-code handling of diagnostics: promote to error or drop."""

    warn_as_error: frozenset[str] = frozenset()
    suppress: frozenset[str] = frozenset()


def emit_warning(
    code: str,
    message: str,
    *,
    policy: WarningPolicy | None = None,
    entity: str | None = None,
) -> None:
    """Report a diagnostic, optionally naming the entity it concerns.

    Suppressed codes are dropped, codes listed in ``warn_as_error`` raise
    ``DiagnosticError``, everything else becomes a ``GucWarning``.
    """
    if entity:
        message = f"{entity}: {message}"
    if policy is not None:
        if code in policy.suppress:
            return
        if code in policy.warn_as_error:
            raise DiagnosticError(f"[{code}] {message}")

    warnings.warn(GucWarning(code, message), stacklevel=2)


def parse_code_list(raw: str) -> frozenset[str]:
    """Parse ``"W01,W03"`` (or ``"all"``) into a set of known codes.

    Raises ``ValueError`` for unknown codes.
    """
    if raw.strip().lower() == "all":
        return KNOWN_CODES
    codes: set[str] = set()
    for token in raw.split(","):
        token = token.strip().upper()
        if not token:
            continue
        if token not in KNOWN_CODES:
            raise ValueError(f"Unknown warning code: {token!r} (known: {sorted(KNOWN_CODES)})")
        codes.add(token)
    return frozenset(codes)
