"""Build store for locating builds and editing their meta.json.

This module handles:
- Resolving build IDs (or "latest") to build directories
- Dotted-path lookups into meta.json
- Deep-merging artifact entries with an atomic write discipline

Workspace layout::

    builds/builds.json               newest build first
    builds/<id>/<arch>/meta.json     per-build metadata
"""

from __future__ import annotations

import copy
import json
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ostree_diskimage.errors import (
    ARTIFACT_NOT_FOUND,
    BUILD_NOT_FOUND,
    DiskImageError,
)
from ostree_diskimage.types import ArtifactEntry

logger = logging.getLogger(__name__)

LATEST = "latest"


class BuildNotFoundError(DiskImageError):
    """Raised when a build directory does not exist."""

    def __init__(self, build_id: str, code: str = BUILD_NOT_FOUND) -> None:
        super().__init__(f"Build not found: {build_id}", code=code)
        self.build_id = build_id


class ArtifactNotFoundError(DiskImageError):
    """Raised when a build has no recorded artifact of a kind."""

    def __init__(
        self, build_id: str, kind: str, code: str = ARTIFACT_NOT_FOUND
    ) -> None:
        super().__init__(f"Build {build_id} has no '{kind}' artifact", code=code)
        self.build_id = build_id
        self.kind = kind


@dataclass(frozen=True)
class BuildDir:
    """A resolved build directory for one architecture."""

    id: str
    arch: str
    path: Path

    @property
    def meta_path(self) -> Path:
        """Path to this build's meta.json."""
        return self.path / "meta.json"


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``patch`` merged in.

    Nested mappings are merged recursively; any other value in ``patch``
    replaces the value in ``base``. Neither argument is modified.
    """
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _target_mode(path: Path) -> int:
    """Return the mode an atomically written ``path`` should end up with."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to ``path`` so that readers never see a partial file.

    The document is written to a temporary file in the same directory,
    given the mode of the file it replaces, fsynced, and renamed over the
    destination.
    """
    mode = _target_mode(path)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=4, sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class BuildStore:
    """Access to the builds/ directory of a workspace."""

    def __init__(self, builds_dir: Path, arch: str) -> None:
        self.builds_dir = builds_dir
        self.arch = arch

    def __repr__(self) -> str:
        return f"<BuildStore(builds_dir='{self.builds_dir}', arch='{self.arch}')>"

    @property
    def builds_json_path(self) -> Path:
        return self.builds_dir / "builds.json"

    def list_builds(self) -> list[str]:
        """List build IDs, newest first.

        Returns:
            Build IDs from builds.json, or from the ``latest`` symlink when
            builds.json does not exist.
        """
        if self.builds_json_path.exists():
            with self.builds_json_path.open(encoding="utf-8") as f:
                data = json.load(f)
            return [b["id"] for b in data.get("builds", [])]

        latest = self.builds_dir / LATEST
        if latest.is_symlink():
            return [os.readlink(latest).rstrip("/").split("/")[-1]]
        return []

    def resolve_build(self, build_id: str = LATEST) -> BuildDir:
        """Resolve a build ID to its directory.

        Args:
            build_id: Build ID or "latest".

        Returns:
            BuildDir for the configured architecture.

        Raises:
            BuildNotFoundError: If no such build exists.
        """
        if build_id == LATEST:
            builds = self.list_builds()
            if not builds:
                raise BuildNotFoundError(LATEST)
            build_id = builds[0]

        path = self.builds_dir / build_id / self.arch
        if not (path / "meta.json").is_file():
            raise BuildNotFoundError(build_id)

        logger.debug("Resolved build %s to %s", build_id, path)
        return BuildDir(id=build_id, arch=self.arch, path=path)

    def read_meta(self, build: BuildDir) -> dict[str, Any]:
        """Read a build's meta.json."""
        with build.meta_path.open(encoding="utf-8") as f:
            data: dict[str, Any] = json.load(f)
        return data

    def get_meta_key(
        self, build: BuildDir, dotted_path: str, default: Any = None
    ) -> Any:
        """Look up a dotted path (e.g. ``images.metal.path``) in meta.json.

        Returns:
            The value, or ``default`` when any segment is missing.
        """
        value: Any = self.read_meta(build)
        for segment in dotted_path.split("."):
            if not isinstance(value, dict) or segment not in value:
                return default
            value = value[segment]
        return value

    def merge_artifact(self, build: BuildDir, entry: ArtifactEntry) -> dict[str, Any]:
        """Record an artifact as ``images.<kind>`` and write meta.json atomically.

        Other keys of the document are preserved. A previous entry of the
        same kind is replaced as a whole so no stale fields survive.

        Returns:
            The merged document.
        """
        meta = self.read_meta(build)
        if isinstance(meta.get("images"), dict):
            meta["images"].pop(entry.kind, None)
        merged = deep_merge(meta, {"images": {entry.kind: entry.to_meta()}})
        write_json_atomic(build.meta_path, merged)
        logger.info(
            "Recorded %s artifact %s in build %s", entry.kind, entry.path, build.id
        )
        return merged

    def get_artifact(self, build: BuildDir, kind: str) -> ArtifactEntry | None:
        """Return the recorded artifact of a kind, or None."""
        data = self.get_meta_key(build, f"images.{kind}")
        if not isinstance(data, dict):
            return None
        return ArtifactEntry.from_meta(kind, data)

    def image_path(self, build: BuildDir, kind: str) -> Path:
        """Return the path of a recorded artifact.

        Raises:
            ArtifactNotFoundError: If the artifact is not recorded or missing.
        """
        entry = self.get_artifact(build, kind)
        if entry is None:
            raise ArtifactNotFoundError(build.id, kind)
        path = build.path / entry.path
        if not path.exists():
            raise ArtifactNotFoundError(build.id, kind)
        return path


__all__ = [
    "LATEST",
    "ArtifactNotFoundError",
    "BuildDir",
    "BuildNotFoundError",
    "BuildStore",
    "deep_merge",
    "write_json_atomic",
]
