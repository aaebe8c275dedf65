"""Image kinds and their per-kind policy.

Every property that differs between kinds (platform identifier, format,
sector geometry, size policy, supported architectures) lives in the
KindPolicy table so the build flow never branches on kind names.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ostree_diskimage.types import ImageFormat

ALL_ARCHES = frozenset({"x86_64", "aarch64", "ppc64le", "s390x"})
MAINFRAME_ARCHES = frozenset({"s390x"})

SECTOR_SIZE_4K = 4096


class SizePolicy(str, Enum):
    """How the total disk size of an image is determined."""

    # rootfs estimate + reserved space for the other partitions
    ESTIMATED = "estimated"
    # platform-configured size in GiB
    PLATFORM = "platform"


@dataclass(frozen=True)
class KindPolicy:
    """Static properties of an image kind.

    Attributes:
        platform: Ignition platform identifier passed on the kernel command line.
        platform_config: Key looked up in the platform table.
        image_format: On-disk format of the produced image.
        sector_size: Physical and logical sector size, or None for the default.
        size_policy: Source of the total disk size.
        arches: Architectures the kind can be built on.
        secure_execution: Whether the image is wrapped for IBM Secure Execution.
    """

    platform: str
    platform_config: str
    image_format: ImageFormat
    sector_size: int | None
    size_policy: SizePolicy
    arches: frozenset[str]
    secure_execution: bool = False


class ImageKind(str, Enum):
    """Disk image kinds that can be built from a build's commit."""

    METAL = "metal"
    METAL4K = "metal4k"
    DASD = "dasd"
    QEMU = "qemu"
    QEMU_SECEX = "qemu-secex"

    @property
    def policy(self) -> KindPolicy:
        return _POLICIES[self]

    @property
    def platform(self) -> str:
        return self.policy.platform

    @property
    def image_format(self) -> ImageFormat:
        return self.policy.image_format

    @property
    def meta_key(self) -> str:
        """Key of this kind under ``images`` in meta.json."""
        return self.value

    @classmethod
    def parse(cls, name: str, secure_execution: bool = False) -> ImageKind:
        """Parse a kind name, selecting the Secure Execution qemu variant.

        Raises:
            ValueError: If the name is unknown or Secure Execution is
                requested for a kind other than qemu.
        """
        kind = cls(name)
        if secure_execution:
            if kind not in (cls.QEMU, cls.QEMU_SECEX):
                raise ValueError(
                    f"Secure Execution is only supported for qemu, not {name}"
                )
            return cls.QEMU_SECEX
        return kind


_POLICIES: dict[ImageKind, KindPolicy] = {
    ImageKind.METAL: KindPolicy(
        platform="metal",
        platform_config="metal",
        image_format=ImageFormat.RAW,
        sector_size=None,
        size_policy=SizePolicy.ESTIMATED,
        arches=ALL_ARCHES,
    ),
    # dasd and metal4k are metal at the Ignition level despite 4K geometry
    ImageKind.METAL4K: KindPolicy(
        platform="metal",
        platform_config="metal",
        image_format=ImageFormat.RAW,
        sector_size=SECTOR_SIZE_4K,
        size_policy=SizePolicy.ESTIMATED,
        arches=ALL_ARCHES,
    ),
    ImageKind.DASD: KindPolicy(
        platform="metal",
        platform_config="metal",
        image_format=ImageFormat.RAW,
        sector_size=SECTOR_SIZE_4K,
        size_policy=SizePolicy.ESTIMATED,
        arches=MAINFRAME_ARCHES,
    ),
    ImageKind.QEMU: KindPolicy(
        platform="qemu",
        platform_config="qemu",
        image_format=ImageFormat.QCOW2,
        sector_size=None,
        size_policy=SizePolicy.PLATFORM,
        arches=ALL_ARCHES,
    ),
    ImageKind.QEMU_SECEX: KindPolicy(
        platform="qemu",
        platform_config="qemu",
        image_format=ImageFormat.QCOW2,
        sector_size=None,
        size_policy=SizePolicy.PLATFORM,
        arches=MAINFRAME_ARCHES,
        secure_execution=True,
    ),
}


__all__ = [
    "ALL_ARCHES",
    "MAINFRAME_ARCHES",
    "SECTOR_SIZE_4K",
    "ImageKind",
    "KindPolicy",
    "SizePolicy",
]
