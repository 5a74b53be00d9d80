"""
Plugin Error Taxonomy.

All errors raised by the plugin system derive from PluginError so hosts can
catch the whole family with a single clause.
"""


class PluginError(Exception):
    """Base exception for plugin-related errors."""

    pass


class NotFoundError(PluginError):
    """Raised when a plugin directory, manifest or entry file is missing."""

    pass


class ManifestError(PluginError):
    """Base exception for manifest-related errors."""

    pass


class ManifestParseError(ManifestError):
    """Raised when plugin.json cannot be decoded."""

    pass


class ManifestValidationError(ManifestError):
    """
    Raised when a decoded manifest has the wrong shape.

    Attributes:
        field: Name of the offending manifest field
    """

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class NotLoadedError(PluginError):
    """Raised when an operation targets a plugin that is not loaded."""

    pass


class InstanceError(PluginError):
    """Raised when plugin code fails to execute, construct or initialize."""

    pass


class DependencyError(PluginError):
    """Raised when dependency resolution fails."""

    pass


class UnknownCommandError(PluginError):
    """Raised when no loaded plugin declares a command."""

    pass
