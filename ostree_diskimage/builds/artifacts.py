"""Artifact creation, finalization and recording.

This module handles:
- Creating sized-but-empty working images
- Finalizing working images into durable artifacts
- Computing checksums
- Recording artifacts in the build's meta.json

An artifact is only hashed and recorded after it has been finalized, so
the recorded checksum and size always describe the promoted file.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from ostree_diskimage.errors import ExternalToolError
from ostree_diskimage.types import ArtifactEntry, ImageFormat

if TYPE_CHECKING:
    from ostree_diskimage.builds.store import BuildDir, BuildStore
    from ostree_diskimage.config import Settings

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class ArtifactError(ExternalToolError):
    """Raised when an image tool fails while creating or finalizing an artifact."""


def _run_tool(cmd: list[str]) -> None:
    logger.debug("Running: %s", shlex.join(cmd))
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise ArtifactError(
            f"{cmd[0]} failed: {e.stderr.strip()}", exit_code=e.returncode
        ) from e
    except OSError as e:
        raise ArtifactError(f"Failed to run {cmd[0]}: {e}") from e


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def create_sized_image(
    settings: Settings,
    path: Path,
    image_format: ImageFormat,
    size_mb: int,
    backing_file: Path | None = None,
) -> Path:
    """Create an empty image of ``size_mb`` MiB.

    Args:
        settings: Application settings.
        path: Image to create (replaced if it exists).
        image_format: Format of the new image.
        size_mb: Virtual size in MiB.
        backing_file: qcow2 image the new image is chained to.

    Returns:
        Path to the created image.
    """
    path.unlink(missing_ok=True)
    cmd = [settings.qemu_img_binary, "create", "-f", image_format.value]
    if backing_file is not None:
        cmd.extend(["-b", str(backing_file), "-F", ImageFormat.QCOW2.value])
    cmd.extend([str(path), f"{size_mb}M"])
    _run_tool(cmd)
    logger.info("Created %s image %s (%d MiB)", image_format.value, path, size_mb)
    return path


def format_ext4(settings: Settings, path: Path) -> None:
    """Create an empty ext4 filesystem on a raw image file."""
    _run_tool([settings.mkfs_ext4_binary, "-q", "-F", str(path)])


def _fsync_path(path: Path) -> None:
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def finalize_artifact(
    settings: Settings,
    tmp_path: Path,
    final_path: Path,
    image_format: ImageFormat | None = None,
) -> Path:
    """Make a working file durable and move it into place atomically.

    qcow2 images are rewritten with ``qemu-img convert`` to drop unused
    clusters. The result is fsynced and renamed over ``final_path``, then
    the directory entry is fsynced. When this returns the artifact is
    complete and safe to hash.

    Returns:
        ``final_path``.
    """
    source = tmp_path
    if image_format is ImageFormat.QCOW2:
        compacted = tmp_path.with_name(tmp_path.name + ".compact")
        _run_tool(
            [
                settings.qemu_img_binary,
                "convert",
                "-O",
                ImageFormat.QCOW2.value,
                str(tmp_path),
                str(compacted),
            ]
        )
        tmp_path.unlink()
        source = compacted

    _fsync_path(source)
    os.replace(source, final_path)
    _fsync_path(final_path.parent)
    logger.info("Finalized %s", final_path)
    return final_path


def commit_artifact(
    store: BuildStore,
    build: BuildDir,
    kind: str,
    final_path: Path,
    skip_compression: bool = False,
) -> ArtifactEntry:
    """Hash a finalized artifact and record it as ``images.<kind>``.

    Args:
        store: Build store.
        build: Build the artifact belongs to.
        kind: Artifact kind (meta.json key).
        final_path: Finalized artifact inside the build directory.
        skip_compression: Mark the artifact as not to be compressed.

    Returns:
        The recorded entry.
    """
    entry = ArtifactEntry(
        kind=kind,
        path=final_path.relative_to(build.path).as_posix(),
        sha256=compute_file_hash(final_path),
        size=final_path.stat().st_size,
        skip_compression=skip_compression,
    )
    store.merge_artifact(build, entry)
    return entry


__all__ = [
    "HASH_CHUNK_SIZE",
    "ArtifactError",
    "commit_artifact",
    "compute_file_hash",
    "create_sized_image",
    "finalize_artifact",
    "format_ext4",
]
