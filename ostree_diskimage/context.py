"""Explicit per-invocation context.

A BuildContext carries the workspace, architecture, settings, build store
and OSTree repository so components never look them up globally.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ostree_diskimage.builds.store import BuildStore
from ostree_diskimage.config import Settings, get_settings
from ostree_diskimage.ostree.repo import OstreeRepo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildContext:
    """Workspace-scoped state threaded through every operation."""

    workdir: Path
    arch: str
    settings: Settings
    store: BuildStore
    repo: OstreeRepo

    @property
    def tmp_dir(self) -> Path:
        return self.workdir / "tmp"

    @property
    def config_dir(self) -> Path:
        return self.workdir / "src" / "config"

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        workdir: Path | None = None,
    ) -> BuildContext:
        """Create a context for a workspace.

        Args:
            settings: Application settings (loaded from env if omitted).
            workdir: Workspace root overriding ``settings.workdir``.
        """
        if settings is None:
            settings = get_settings()
        root = (workdir or settings.workdir).resolve()
        return cls(
            workdir=root,
            arch=settings.arch,
            settings=settings,
            store=BuildStore(root / "builds", settings.arch),
            repo=OstreeRepo(root / "tmp" / "repo", binary=settings.ostree_binary),
        )


@contextmanager
def scratch_dir(ctx: BuildContext, prefix: str = "run-") -> Iterator[Path]:
    """Create a scratch directory under tmp/ that is removed on exit."""
    ctx.tmp_dir.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=ctx.tmp_dir))
    logger.debug("Created scratch directory %s", path)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed scratch directory %s", path)


__all__ = ["BuildContext", "scratch_dir"]
