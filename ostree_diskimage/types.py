"""Shared type definitions for ostree_diskimage.

This module contains dataclasses and enums shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ImageFormat(str, Enum):
    """On-disk format of a disk image."""

    RAW = "raw"
    QCOW2 = "qcow2"


@dataclass
class ArtifactEntry:
    """An artifact recorded under ``images.<kind>`` in meta.json.

    Attributes:
        kind: Artifact kind (metal, qemu-secex, ignition-gpg-key, ...).
        path: File name relative to the build directory.
        sha256: SHA-256 of the file at commit time.
        size: File size in bytes.
        skip_compression: Ask later compression steps to leave the file as is.
    """

    kind: str
    path: str
    sha256: str
    size: int
    skip_compression: bool = False

    def to_meta(self) -> dict[str, Any]:
        """Return the meta.json representation (kind is the mapping key)."""
        data: dict[str, Any] = {
            "path": self.path,
            "sha256": self.sha256,
            "size": self.size,
        }
        if self.skip_compression:
            data["skip-compression"] = True
        return data

    @classmethod
    def from_meta(cls, kind: str, data: dict[str, Any]) -> "ArtifactEntry":
        """Build an entry from its meta.json representation."""
        return cls(
            kind=kind,
            path=data["path"],
            sha256=data["sha256"],
            size=int(data["size"]),
            skip_compression=bool(data.get("skip-compression", False)),
        )


__all__ = ["ArtifactEntry", "ImageFormat"]
