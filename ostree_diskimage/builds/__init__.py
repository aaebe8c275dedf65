"""Build directory management module.

This module handles:
- Reading builds.json and per-build meta.json
- Atomic metadata merges
- Building markers that serialize image builds
- Artifact finalization and recording
- Disk image builds
"""

from ostree_diskimage.builds.store import (
    LATEST,
    ArtifactNotFoundError,
    BuildDir,
    BuildNotFoundError,
    BuildStore,
)

__all__ = [
    "LATEST",
    "ArtifactNotFoundError",
    "BuildDir",
    "BuildNotFoundError",
    "BuildStore",
]

# Lazy imports for submodules to avoid circular imports
# Access via ostree_diskimage.builds.service, etc.
