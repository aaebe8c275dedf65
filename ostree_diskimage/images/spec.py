"""Disk build request assembly.

This module handles:
- Validating the image kind against the architecture
- Resolving Secure Execution inputs
- Computing rootfs and disk sizes per kind
- Composing kernel arguments and disk builder flags
- Writing the request document consumed by the disk builder
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ostree_diskimage.errors import ConfigurationError
from ostree_diskimage.images.kinds import MAINFRAME_ARCHES, ImageKind, SizePolicy
from ostree_diskimage.images.size import disk_size_mb
from ostree_diskimage.types import ImageFormat

if TYPE_CHECKING:
    from ostree_diskimage.builds.store import BuildDir
    from ostree_diskimage.config import Settings
    from ostree_diskimage.images.config import ImageConfig, PlatformsConfig

logger = logging.getLogger(__name__)

MIB_PER_GIB = 1024

# x86 BIOS cannot boot from 4K native disks
NO_BIOS_BOOTLOADER_FLAG = "--no-x86-bios-bootloader"
SECURE_EXECUTION_FLAG = "--with-secure-execution"
IGNITION_PUBKEY_FLAG = "--write-ignition-pubkey-to"


@dataclass(frozen=True)
class SecexInputs:
    """Where the Secure Execution host key comes from.

    Exactly one of the two is set: an operator-supplied host key, or a
    protected image VM that derives the key at build time.
    """

    hostkey: Path | None = None
    genprotimgvm: Path | None = None


@dataclass
class DiskSpec:
    """Everything the disk builder needs for one image.

    Attributes:
        kind: Image kind being built.
        osname: Operating system name (meta.json ``name``).
        buildid: Build ID.
        imgid: File name of the produced image.
        image_format: Format of the produced image.
        disk_size_mb: Total disk size in MiB.
        rootfs_size_mb: Rootfs partition size in MiB (0 = fill the disk).
        ostree_commit: Commit deployed into the image.
        ostree_ref: Ref recorded for the deployment, if any.
        ostree_container: Path to the build's container archive, if any.
        deploy_via_container: Deploy from the container archive.
        container_imgref: Image reference recorded for the deployment.
        kargs: Kernel arguments string.
        platform: Ignition platform identifier.
        sector_size: 4K sector size for 4Kn kinds, None otherwise.
        extra_flags: Additional disk builder flags.
        ignition_pubkey_path: Where the builder writes the Ignition public key.
    """

    kind: ImageKind
    osname: str
    buildid: str
    imgid: str
    image_format: ImageFormat
    disk_size_mb: int
    rootfs_size_mb: int
    ostree_commit: str
    ostree_ref: str | None
    ostree_container: str | None
    deploy_via_container: bool
    container_imgref: str | None
    kargs: str
    platform: str
    sector_size: int | None = None
    extra_flags: list[str] = field(default_factory=list)
    ignition_pubkey_path: Path | None = None

    def to_document(self, image_config: ImageConfig) -> dict[str, Any]:
        """Return the request document: image config plus dynamic fields."""
        document = image_config.to_document()
        document.update(
            {
                "rootfs-size": self.rootfs_size_mb,
                "osname": self.osname,
                "buildid": self.buildid,
                "imgid": self.imgid,
                "deploy-via-container": self.deploy_via_container,
                "container-imgref": self.container_imgref,
                "ostree-commit": self.ostree_commit,
                "ostree-ref": self.ostree_ref,
                "ostree-container": self.ostree_container,
            }
        )
        return document

    def write(self, path: Path, image_config: ImageConfig) -> Path:
        """Write the request document as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(self.to_document(image_config), f, indent=2, sort_keys=True)
        logger.debug("Wrote disk spec to %s", path)
        return path


def check_kind_supported(kind: ImageKind, arch: str) -> None:
    """Fail if ``kind`` cannot be built on ``arch``.

    Raises:
        ConfigurationError: If the combination is unsupported.
    """
    if kind is ImageKind.DASD and arch not in MAINFRAME_ARCHES:
        raise ConfigurationError(f"dasd images can only be built on s390x, not {arch}")
    if arch not in kind.policy.arches:
        raise ConfigurationError(f"{kind.value} images are not supported on {arch}")


def resolve_secex_inputs(
    settings: Settings,
    hostkey: Path | None = None,
    genprotimgvm: Path | None = None,
) -> SecexInputs:
    """Choose the Secure Execution host key source.

    Raises:
        ConfigurationError: If neither a host key nor a protected image VM
            is available.
    """
    if hostkey is not None:
        if not hostkey.is_file():
            raise ConfigurationError(f"Host key not found: {hostkey}")
        return SecexInputs(hostkey=hostkey)

    vm_image = genprotimgvm or settings.genprotimgvm
    if not vm_image.is_file():
        raise ConfigurationError(
            "Secure Execution requires --hostkey or a protected image VM "
            f"(not found: {vm_image})"
        )
    return SecexInputs(genprotimgvm=vm_image)


def image_filename(osname: str, buildid: str, kind: ImageKind, arch: str) -> str:
    """Return the file name of a disk image."""
    return f"{osname}-{buildid}-{kind.value}.{arch}.{kind.image_format.value}"


def ignition_pubkey_filename(osname: str, buildid: str) -> str:
    """Return the file name of the Secure Execution Ignition public key."""
    return f"{osname}-{buildid}-ignition-secex-key.gpg.pub"


def compute_sizes(
    kind: ImageKind,
    rootfs_estimate_mb: int,
    image_config: ImageConfig,
    platforms: PlatformsConfig,
    arch: str,
) -> tuple[int, int]:
    """Return ``(disk_size_mb, rootfs_size_mb)`` for an image kind.

    Estimate-sized kinds get the estimate plus the reserved partitions and
    let the rootfs fill the disk. Platform-sized kinds take the disk size
    from the platform table (falling back to the image config) and a fixed
    rootfs size when one is configured.
    """
    if kind.policy.size_policy is SizePolicy.ESTIMATED:
        return disk_size_mb(rootfs_estimate_mb), 0

    entry = platforms.get(arch, kind.policy.platform_config)
    size_gb = entry.size if entry.size is not None else image_config.size
    if entry.rootfs_size is not None:
        rootfs_mb = entry.rootfs_size
    elif image_config.rootfs_size is not None:
        rootfs_mb = image_config.rootfs_size
    else:
        rootfs_mb = rootfs_estimate_mb
    return size_gb * MIB_PER_GIB, rootfs_mb


def compose_kargs(
    kind: ImageKind,
    image_config: ImageConfig,
    platforms: PlatformsConfig,
    arch: str,
) -> str:
    """Compose the kernel arguments, ending with the Ignition platform id."""
    entry = platforms.get(arch, kind.policy.platform_config)
    kargs = [
        *image_config.extra_kargs,
        *entry.kernel_arguments,
        f"ignition.platform.id={kind.platform}",
    ]
    return " ".join(kargs)


def build_disk_spec(
    build: BuildDir,
    meta: dict[str, Any],
    kind: ImageKind,
    rootfs_estimate_mb: int,
    image_config: ImageConfig,
    platforms: PlatformsConfig,
    ignition_pubkey_path: Path | None = None,
) -> DiskSpec:
    """Assemble the disk build request for one image.

    Args:
        build: Build the image is made from.
        meta: The build's meta.json document.
        kind: Image kind.
        rootfs_estimate_mb: Rootfs estimate in MiB, margin included.
        image_config: Image configuration.
        platforms: Platform table.
        ignition_pubkey_path: Secure Execution only; where the builder
            writes the Ignition public key.

    Returns:
        DiskSpec for the image.
    """
    osname = meta["name"]
    disk_mb, rootfs_mb = compute_sizes(
        kind, rootfs_estimate_mb, image_config, platforms, build.arch
    )

    extra_flags: list[str] = []
    if kind.policy.sector_size is not None and build.arch == "x86_64":
        extra_flags.append(NO_BIOS_BOOTLOADER_FLAG)
    if kind.policy.secure_execution:
        extra_flags.append(SECURE_EXECUTION_FLAG)
        if ignition_pubkey_path is not None:
            extra_flags.extend([IGNITION_PUBKEY_FLAG, str(ignition_pubkey_path)])

    container_path = (meta.get("images") or {}).get("ostree", {}).get("path")
    ostree_container = str(build.path / container_path) if container_path else None

    spec = DiskSpec(
        kind=kind,
        osname=osname,
        buildid=build.id,
        imgid=image_filename(osname, build.id, kind, build.arch),
        image_format=kind.image_format,
        disk_size_mb=disk_mb,
        rootfs_size_mb=rootfs_mb,
        ostree_commit=meta["ostree-commit"],
        ostree_ref=meta.get("ref"),
        ostree_container=ostree_container,
        deploy_via_container=image_config.deploy_via_container,
        container_imgref=image_config.container_imgref,
        kargs=compose_kargs(kind, image_config, platforms, build.arch),
        platform=kind.platform,
        sector_size=kind.policy.sector_size,
        extra_flags=extra_flags,
        ignition_pubkey_path=ignition_pubkey_path,
    )
    logger.info(
        "Disk spec for %s: disk %d MiB, rootfs %s, platform %s",
        kind.value,
        disk_mb,
        f"{rootfs_mb} MiB" if rootfs_mb else "auto",
        spec.platform,
    )
    return spec


def compose_disk_builder_args(
    spec: DiskSpec,
    config_path: Path,
    platforms_path: Path,
) -> list[str]:
    """Compose the disk builder arguments for a spec."""
    return [
        "--config",
        str(config_path),
        "--kargs",
        spec.kargs,
        "--platform",
        spec.platform,
        "--platforms-json",
        str(platforms_path),
        *spec.extra_flags,
    ]


__all__ = [
    "IGNITION_PUBKEY_FLAG",
    "NO_BIOS_BOOTLOADER_FLAG",
    "SECURE_EXECUTION_FLAG",
    "DiskSpec",
    "SecexInputs",
    "build_disk_spec",
    "check_kind_supported",
    "compose_disk_builder_args",
    "compose_kargs",
    "compute_sizes",
    "ignition_pubkey_filename",
    "image_filename",
    "resolve_secex_inputs",
]
