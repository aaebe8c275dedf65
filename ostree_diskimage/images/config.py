"""Image and platform configuration schemas.

This module defines the Pydantic models for the image configuration
(``image.yaml``) and the per-architecture platform table
(``platforms.yaml``) found in a workspace's ``src/config`` directory.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ostree_diskimage.errors import ConfigurationError


class ImageConfig(BaseModel):
    """Schema for the image configuration.

    Unknown keys are kept and forwarded to the disk builder, which owns
    their meaning.

    Attributes:
        size: Default disk size in GiB for platform-sized images.
        rootfs: Root filesystem type.
        extra_kargs: Kernel arguments added to every image.
        deploy_via_container: Deploy from the build's container image.
        container_imgref: Image reference recorded in the deployment.
        rootfs_size: Fixed rootfs partition size in MiB.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    size: int = Field(default=10, ge=1, description="Disk size in GiB")
    rootfs: Literal["xfs", "ext4verity", "btrfs"] = Field(default="xfs")
    extra_kargs: list[str] = Field(default_factory=list, alias="extra-kargs")
    deploy_via_container: bool = Field(default=False, alias="deploy-via-container")
    container_imgref: str | None = Field(default=None, alias="container-imgref")
    rootfs_size: int | None = Field(default=None, ge=0, alias="rootfs-size")

    def to_document(self) -> dict[str, Any]:
        """Return the configuration with its original key spelling."""
        return self.model_dump(by_alias=True, exclude_none=True)


class PlatformConfig(BaseModel):
    """Schema for one platform entry in the platform table.

    Attributes:
        kernel_arguments: Extra kernel arguments for this platform.
        grub_commands: Extra GRUB commands for this platform.
        size: Calibrated disk size in GiB.
        rootfs_size: Calibrated rootfs partition size in MiB.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    kernel_arguments: list[str] = Field(
        default_factory=list, alias="kernel-arguments"
    )
    grub_commands: list[str] = Field(default_factory=list, alias="grub-commands")
    size: int | None = Field(default=None, ge=1)
    rootfs_size: int | None = Field(default=None, ge=0, alias="rootfs-size")


class PlatformsConfig(BaseModel):
    """Per-architecture platform table."""

    model_config = ConfigDict(extra="forbid")

    arches: dict[str, dict[str, PlatformConfig]] = Field(default_factory=dict)

    def for_arch(self, arch: str) -> dict[str, PlatformConfig]:
        return self.arches.get(arch, {})

    def get(self, arch: str, platform: str) -> PlatformConfig:
        """Return the entry for a platform, or an empty default."""
        return self.for_arch(arch).get(platform, PlatformConfig())

    def to_document(self, arch: str) -> dict[str, Any]:
        """Return the platform capability table passed to the disk builder."""
        return {
            name: entry.model_dump(by_alias=True, exclude_none=True)
            for name, entry in self.for_arch(arch).items()
        }


def _load_mapping(path: Path) -> dict[str, Any]:
    """Load a YAML or JSON mapping from ``path``."""
    with open(path, encoding="utf-8") as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a mapping in {path}, got {type(data).__name__}"
        )
    return data


def _first_existing(config_dir: Path, stem: str) -> Path | None:
    for suffix in (".yaml", ".yml", ".json"):
        candidate = config_dir / f"{stem}{suffix}"
        if candidate.exists():
            return candidate
    return None


def load_image_config(config_dir: Path) -> ImageConfig:
    """Load ``image.yaml`` (or ``image.json``) from a config directory.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    path = _first_existing(config_dir, "image")
    if path is None:
        raise ConfigurationError(f"No image configuration found in {config_dir}")
    try:
        return ImageConfig.model_validate(_load_mapping(path))
    except ValueError as e:
        raise ConfigurationError(f"Invalid image configuration {path}: {e}") from e


def load_platforms_config(config_dir: Path) -> PlatformsConfig:
    """Load ``platforms.yaml`` from a config directory.

    A missing file yields an empty table.

    Raises:
        ConfigurationError: If the file is invalid.
    """
    path = _first_existing(config_dir, "platforms")
    if path is None:
        return PlatformsConfig()
    try:
        return PlatformsConfig.model_validate({"arches": _load_mapping(path)})
    except ValueError as e:
        raise ConfigurationError(f"Invalid platform table {path}: {e}") from e


__all__ = [
    "ImageConfig",
    "PlatformConfig",
    "PlatformsConfig",
    "load_image_config",
    "load_platforms_config",
]
