"""Thin client for an OSTree repository.

All operations shell out to the ``ostree`` CLI. Only the handful of
operations the disk and fast-build paths need are wrapped here.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from ostree_diskimage.errors import ExternalToolError

logger = logging.getLogger(__name__)


class OstreeError(ExternalToolError):
    """Raised when an ostree command fails."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message, exit_code=exit_code)


def _parse_variant_string(value: str) -> str:
    """Strip GVariant text quoting from a printed metadata value."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    return value


class OstreeRepo:
    """An OSTree repository on disk."""

    def __init__(self, path: Path, binary: str = "ostree") -> None:
        self.path = path
        self.binary = binary

    def __repr__(self) -> str:
        return f"<OstreeRepo(path='{self.path}')>"

    def _run(self, *args: str) -> str:
        cmd = [self.binary, f"--repo={self.path}", *args]
        logger.debug("Running: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise OstreeError(
                f"ostree {args[0]} failed: {e.stderr.strip()}",
                exit_code=e.returncode,
            ) from e
        except OSError as e:
            raise OstreeError(f"Failed to run ostree: {e}") from e
        return result.stdout

    def rev_parse(self, ref: str) -> str:
        """Resolve a ref or partial checksum to a commit checksum."""
        return self._run("rev-parse", ref).strip()

    def read_metadata(self, commit: str, key: str) -> str | None:
        """Return a commit metadata value as a string, or None if unset."""
        try:
            out = self._run("show", f"--print-metadata-key={key}", commit)
        except OstreeError:
            return None
        return _parse_variant_string(out)

    def get_parent(self, commit: str) -> str | None:
        """Return the parent checksum of ``commit``, or None for a root commit.

        Raises:
            OstreeError: If ``commit`` does not exist.
        """
        commit = self.rev_parse(commit)
        try:
            return self.rev_parse(f"{commit}^")
        except OstreeError:
            return None

    def list_refs(self) -> list[str]:
        """Return the refs of the repository, sorted."""
        out = self._run("refs")
        return sorted(line.strip() for line in out.splitlines() if line.strip())

    def commit(
        self,
        branch: str,
        tree_dirs: list[Path],
        parent: str | None = None,
        base_ref: str | None = None,
        keep_metadata: list[str] | None = None,
        metadata: dict[str, str] | None = None,
        consume: bool = False,
    ) -> str:
        """Create a commit and return its checksum.

        Args:
            branch: Ref to update.
            tree_dirs: Directories layered, in order, onto ``base_ref``.
            parent: Parent commit checksum.
            base_ref: Commit whose tree the directories are layered onto.
            keep_metadata: Metadata keys carried over from ``parent``.
            metadata: Metadata strings added to the commit.
            consume: Let ostree consume (delete) the tree directories.

        Returns:
            New commit checksum.
        """
        args = ["commit", f"--branch={branch}", "--owner-uid=0", "--owner-gid=0"]
        if parent:
            args.append(f"--parent={parent}")
        if base_ref:
            args.append(f"--tree=ref={base_ref}")
        args.extend(f"--tree=dir={d}" for d in tree_dirs)
        for key in keep_metadata or []:
            args.append(f"--keep-metadata={key}")
        for key, value in (metadata or {}).items():
            args.append(f"--add-metadata-string={key}={value}")
        if consume:
            args.append("--consume")

        commit = self._run(*args).strip()
        logger.info("Committed %s on %s", commit, branch)
        return commit


__all__ = ["OstreeError", "OstreeRepo"]
