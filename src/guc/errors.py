"""Custom exception hierarchy for the guc converter."""


class GucError(Exception):
    """Base exception for all guc errors."""


class InputError(GucError):
    """Raised when the source asset is missing, unreadable or structurally invalid."""


class ImageError(GucError):
    """Raised when a texture image cannot be read, decoded or is unsupported."""


class UnsupportedFeatureError(GucError):
    """Raised when a mesh primitive or material uses something we cannot translate."""


class OutputError(GucError):
    """Raised when the destination cannot be written."""


class ConfigError(GucError):
    """Raised when conversion options are invalid or cannot be loaded."""


class DiagnosticError(GucError):
    """Raised when a diagnostic is promoted to an error by the warning policy."""
