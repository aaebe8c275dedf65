"""Configuration settings for ostree_diskimage.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
import platform
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# uname -m values that differ from the names used in build directories
_ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}


def normalize_arch(machine: str) -> str:
    """Normalize a machine name to the architecture used in build paths."""
    machine = machine.lower()
    return _ARCH_ALIASES.get(machine, machine)


def _default_arch() -> str:
    """Return the host architecture."""
    return normalize_arch(platform.machine())


def _default_page_size() -> int:
    """Return the host page size."""
    return os.sysconf("SC_PAGE_SIZE")


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the OSDISK_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="OSDISK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Workspace
    workdir: Path = Field(
        default_factory=Path.cwd,
        description="Build workspace containing builds/, tmp/ and src/config",
    )
    arch: str = Field(
        default_factory=_default_arch,
        description="Target CPU architecture",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # External tools
    qemu_binary: str | None = Field(
        default=None,
        description="QEMU system emulator (defaults to qemu-system-<arch>)",
    )
    qemu_img_binary: str = Field(default="qemu-img")
    ostree_binary: str = Field(default="ostree")
    mkfs_ext4_binary: str = Field(default="mkfs.ext4")
    estimator_command: str = Field(
        default="/usr/lib/coreos-assembler/estimate-commit-disk-size",
        description="Estimator printing the commit size as JSON",
    )
    disk_builder_command: str = Field(
        default="/usr/lib/coreos-assembler/create_disk.sh",
        description="Disk builder executed inside the VM",
    )
    offline_update_command: str = Field(
        default="/usr/lib/coreos-assembler/offline-update-impl",
        description="Offline deployment applier executed inside the VM",
    )

    # Virtual machine
    supermin_dir: Path | None = Field(
        default=None,
        description="Supermin appliance (defaults to <workdir>/tmp/supermin.build)",
    )
    vm_memory_mb: int = Field(default=2048, ge=512)
    vm_cpus: int = Field(default=2, ge=1, le=64)

    # Secure Execution
    genprotimgvm: Path = Field(
        default=Path("/data.secex/genprotimgvm.qcow2"),
        description="Protected image VM used to derive the Secure Execution host key",
    )

    # fs-verity block size (page size of the host unless overridden)
    page_size: int = Field(default_factory=_default_page_size, ge=512)

    @field_validator("arch")
    @classmethod
    def validate_arch(cls, v: str) -> str:
        """Normalize the architecture name."""
        return normalize_arch(v)

    @property
    def effective_qemu_binary(self) -> str:
        """Return the QEMU binary to use for the configured architecture."""
        return self.qemu_binary or f"qemu-system-{self.arch}"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "normalize_arch", "print_settings_json"]
