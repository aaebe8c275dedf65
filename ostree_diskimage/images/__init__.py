"""Disk image description module.

This module handles:
- Image kinds and their per-kind policy
- Loading image.yaml and platforms.yaml
- Root filesystem size estimation
- Composing the disk spec handed to the disk builder
"""

from ostree_diskimage.images.config import (
    ImageConfig,
    PlatformConfig,
    PlatformsConfig,
    load_image_config,
    load_platforms_config,
)
from ostree_diskimage.images.kinds import ImageKind, KindPolicy, SizePolicy
from ostree_diskimage.images.spec import DiskSpec, build_disk_spec

__all__ = [
    # Kinds
    "ImageKind",
    "KindPolicy",
    "SizePolicy",
    # Config
    "ImageConfig",
    "PlatformConfig",
    "PlatformsConfig",
    "load_image_config",
    "load_platforms_config",
    # Spec
    "DiskSpec",
    "build_disk_spec",
]
