"""Fast overlay builds.

This module handles:
- Committing a local overlay on top of the latest build's commit
- Applying the commit offline to a copy of the previous qemu image
"""

from ostree_diskimage.fast.overlay import EmptyOverlayError

__all__ = ["EmptyOverlayError"]

# Access the orchestration via ostree_diskimage.fast.service
