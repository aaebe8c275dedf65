"""Overlay preparation for fast builds.

This module handles:
- Rejecting empty overlays before anything is committed
- Moving ``etc/`` to ``usr/etc/`` for the commit (and back afterwards)
- Installing a single component into a staging overlay
- Deriving the version string of a fast build commit
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from ostree_diskimage.errors import EMPTY_OVERLAY, DiskImageError, ExternalToolError

logger = logging.getLogger(__name__)


class EmptyOverlayError(DiskImageError):
    """Raised when a fast build overlay has no content."""

    def __init__(self, overlay: Path) -> None:
        super().__init__(f"Overlay is empty: {overlay}", code=EMPTY_OVERLAY)
        self.overlay = overlay


class OverlayToolError(ExternalToolError):
    """Raised when installing a component or describing its version fails."""


def ensure_overlay_not_empty(overlay: Path) -> None:
    """Fail unless ``overlay`` is a directory with at least one entry.

    Raises:
        EmptyOverlayError: If the overlay is missing or empty.
    """
    if not overlay.is_dir() or not any(overlay.iterdir()):
        raise EmptyOverlayError(overlay)


@contextmanager
def etc_relocated(overlay: Path, restore: bool = True) -> Iterator[Path]:
    """Move ``overlay/etc`` to ``overlay/usr/etc`` for the duration of the block.

    Default configuration lives under ``usr/etc`` in a commit. When the
    overlay is reused after the block, set ``restore`` so the move is
    undone on every exit path.
    """
    etc = overlay / "etc"
    usr_etc = overlay / "usr" / "etc"
    moved = False
    if etc.is_dir() and not etc.is_symlink():
        if usr_etc.exists():
            raise DiskImageError(
                f"Overlay has both etc/ and usr/etc/: {overlay}",
                code="overlay_conflict",
            )
        usr_etc.parent.mkdir(exist_ok=True)
        etc.rename(usr_etc)
        moved = True
        logger.debug("Moved %s to %s", etc, usr_etc)
    try:
        yield overlay
    finally:
        if moved and restore and usr_etc.exists():
            usr_etc.rename(etc)
            if not any(usr_etc.parent.iterdir()):
                usr_etc.parent.rmdir()
            logger.debug("Moved %s back to %s", usr_etc, etc)


def _run(cmd: list[str], cwd: Path) -> str:
    logger.debug("Running: %s (cwd=%s)", shlex.join(cmd), cwd)
    try:
        result = subprocess.run(
            cmd, cwd=cwd, capture_output=True, text=True, check=True
        )
    except subprocess.CalledProcessError as e:
        raise OverlayToolError(
            f"{shlex.join(cmd)} failed: {e.stderr.strip()}", exit_code=e.returncode
        ) from e
    except OSError as e:
        raise OverlayToolError(f"Failed to run {cmd[0]}: {e}") from e
    return result.stdout


def install_project(project_dir: Path, destdir: Path) -> Path:
    """Install a component into ``destdir`` with ``make install``."""
    destdir.mkdir(parents=True, exist_ok=True)
    _run(["make", "install", f"DESTDIR={destdir}"], cwd=project_dir)
    logger.info("Installed %s into %s", project_dir, destdir)
    return destdir


def version_from_git(project_dir: Path) -> str:
    """Describe the component's source checkout as a version string."""
    return _run(
        ["git", "describe", "--tags", "--always", "--abbrev=42"], cwd=project_dir
    ).strip()


def version_from_timestamp(now: datetime | None = None) -> str:
    """Return a UTC timestamp version string (e.g. ``20260118143000``)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return now.strftime("%Y%m%d%H%M%S")


__all__ = [
    "EmptyOverlayError",
    "OverlayToolError",
    "ensure_overlay_not_empty",
    "etc_relocated",
    "install_project",
    "version_from_git",
    "version_from_timestamp",
]
