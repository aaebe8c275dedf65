"""Error definitions shared across ostree_diskimage.

Every error carries a stable ``code`` so that callers can branch on the
condition without parsing messages. Module-specific errors subclass these
and live next to the code that raises them.
"""

# Error code constants
CONFIGURATION_ERROR = "configuration_error"
LOCK_CONTENTION = "lock_contention"
BUILD_NOT_FOUND = "build_not_found"
ARTIFACT_NOT_FOUND = "artifact_not_found"
EXTERNAL_TOOL_FAILURE = "external_tool_failure"
EMPTY_OVERLAY = "empty_overlay"


class DiskImageError(Exception):
    """Base error for all ostree_diskimage failures."""

    def __init__(self, message: str, code: str = "disk_image_error") -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(DiskImageError):
    """Raised for unsupported or incomplete build configuration."""

    def __init__(self, message: str, code: str = CONFIGURATION_ERROR) -> None:
        super().__init__(message, code=code)


class ExternalToolError(DiskImageError):
    """Raised when an external tool exits non-zero or cannot be run."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = EXTERNAL_TOOL_FAILURE,
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code


__all__ = [
    "ARTIFACT_NOT_FOUND",
    "BUILD_NOT_FOUND",
    "CONFIGURATION_ERROR",
    "EMPTY_OVERLAY",
    "EXTERNAL_TOOL_FAILURE",
    "LOCK_CONTENTION",
    "ConfigurationError",
    "DiskImageError",
    "ExternalToolError",
]
