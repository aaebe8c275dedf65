"""Per-(build, image kind) building marker.

The marker is a plain file inside the build directory. It is cooperative:
any process that follows the protocol sees it, and a marker left behind by
a crashed process can only be taken over with an explicit ``force``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from ostree_diskimage.builds.store import BuildDir
from ostree_diskimage.errors import LOCK_CONTENTION, DiskImageError

logger = logging.getLogger(__name__)


class BuildLockedError(DiskImageError):
    """Raised when another invocation holds the marker for (build, kind)."""

    def __init__(self, build_id: str, kind: str, marker: Path) -> None:
        super().__init__(
            f"Build {build_id} is already building '{kind}' (marker: {marker}). "
            "Use --force if the previous run died.",
            code=LOCK_CONTENTION,
        )
        self.build_id = build_id
        self.kind = kind
        self.marker = marker


def marker_path(build: BuildDir, kind: str) -> Path:
    """Return the marker file path for a build and image kind."""
    return build.path / f".{kind}.building"


class LockHandle:
    """A held building marker."""

    def __init__(self, build: BuildDir, kind: str, path: Path) -> None:
        self.build = build
        self.kind = kind
        self.path = path
        self.released = False

    def __repr__(self) -> str:
        return (
            f"<LockHandle(build='{self.build.id}', kind='{self.kind}', "
            f"released={self.released})>"
        )

    def release(self) -> None:
        """Remove the marker. Calling this more than once is harmless."""
        if self.released:
            return
        self.path.unlink(missing_ok=True)
        self.released = True
        logger.debug("Released %s marker for build %s", self.kind, self.build.id)


def acquire(build: BuildDir, kind: str, force: bool = False) -> LockHandle:
    """Create the building marker for (build, kind).

    Args:
        build: Resolved build directory.
        kind: Image kind being built.
        force: Take over an existing marker instead of failing.

    Returns:
        LockHandle owning the marker.

    Raises:
        BuildLockedError: If the marker exists and ``force`` is not set.
    """
    path = marker_path(build, kind)
    owner = json.dumps(
        {
            "pid": os.getpid(),
            "started": datetime.now(timezone.utc).isoformat(),
        }
    )

    try:
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        if not force:
            raise BuildLockedError(build.id, kind, path) from None
        logger.warning(
            "Overriding existing %s marker for build %s: %s", kind, build.id, path
        )
        fd = os.open(str(path), os.O_WRONLY | os.O_TRUNC)

    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(owner)

    logger.debug("Acquired %s marker for build %s", kind, build.id)
    return LockHandle(build, kind, path)


@contextmanager
def building_lock(
    build: BuildDir,
    kind: str,
    force: bool = False,
) -> Iterator[LockHandle]:
    """Hold the building marker for the duration of the block.

    The marker is removed on every exit path, including exceptions and
    ``SystemExit`` raised from a signal handler.
    """
    handle = acquire(build, kind, force=force)
    try:
        yield handle
    finally:
        handle.release()


__all__ = [
    "BuildLockedError",
    "LockHandle",
    "acquire",
    "building_lock",
    "marker_path",
]
