"""Fast build service module.

A fast build layers a local overlay on top of the latest build's commit and
applies the result offline to a copy of the previous qemu image, without a
full compose.

Flow: resolve workspace -> latest build -> overlay -> commit -> clone qemu
image -> apply commit in a VM -> promote.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ostree_diskimage.builds.artifacts import create_sized_image, finalize_artifact
from ostree_diskimage.builds.store import LATEST
from ostree_diskimage.context import BuildContext, scratch_dir
from ostree_diskimage.errors import ConfigurationError
from ostree_diskimage.fast.overlay import (
    ensure_overlay_not_empty,
    etc_relocated,
    install_project,
    version_from_git,
    version_from_timestamp,
)
from ostree_diskimage.types import ImageFormat
from ostree_diskimage.vm.runner import run_in_vm, target_disk

if TYPE_CHECKING:
    from ostree_diskimage.config import Settings

logger = logging.getLogger(__name__)

# Commit metadata carried over from the parent commit
KEEP_METADATA = [
    "coreos-assembler.basearch",
    "fedora-coreos.stream",
    "ostree.bootable",
]

FAST_IMAGE_SIZE_MB = 20 * 1024
FAST_BUILDS_DIR = "fastbuilds"


@dataclass
class FastBuildResult:
    """Result of a build_fast() call.

    Attributes:
        build_id: Build the overlay was layered on.
        parent_commit: Commit of that build.
        commit: New commit containing the overlay.
        version: Version recorded on the new commit.
        path: The new qemu image.
    """

    build_id: str
    parent_commit: str
    commit: str
    version: str
    path: Path


def fast_branch(arch: str) -> str:
    """Return the ref fast build commits are written to."""
    return f"fastbuild/{arch}"


def resolve_fast_workspace(workdir: Path, inherit_from: Path | None = None) -> Path:
    """Return the workspace whose latest build a fast build inherits from.

    Args:
        workdir: Workspace of the current build context.
        inherit_from: Alternate workspace; ``workdir`` when omitted.

    Raises:
        ConfigurationError: If the directory is not a build workspace.
    """
    root = (inherit_from or workdir).resolve()
    if not (root / "builds").is_dir():
        raise ConfigurationError(f"Not a build workspace (no builds/): {root}")
    return root


def commit_overlay(
    ctx: BuildContext,
    overlay: Path,
    parent_commit: str,
    version: str,
    consume: bool = False,
) -> str:
    """Commit ``overlay`` on top of ``parent_commit``.

    Args:
        ctx: Build context.
        overlay: Directory tree layered onto the parent's tree.
        parent_commit: Commit the overlay is layered on.
        version: Version recorded as commit metadata.
        consume: Let ostree delete the overlay while committing.

    Returns:
        The new commit checksum.

    Raises:
        EmptyOverlayError: If the overlay has no content.
        OstreeError: If the commit fails.
    """
    ensure_overlay_not_empty(overlay)

    with etc_relocated(overlay, restore=not consume):
        return ctx.repo.commit(
            fast_branch(ctx.arch),
            [overlay],
            parent=parent_commit,
            base_ref=parent_commit,
            keep_metadata=KEEP_METADATA,
            metadata={"version": version},
            consume=consume,
        )


def clone_previous_image(settings: Settings, backing: Path, dest: Path) -> Path:
    """Create a qcow2 image chained to the previous qemu image."""
    return create_sized_image(
        settings, dest, ImageFormat.QCOW2, FAST_IMAGE_SIZE_MB, backing_file=backing
    )


def prune_fast_images(
    outdir: Path, kind: str = "qemu", keep: Path | None = None
) -> list[Path]:
    """Delete fast build images of ``kind`` in ``outdir`` other than ``keep``.

    Returns:
        The removed paths.
    """
    removed = []
    for path in sorted(outdir.glob(f"fastbuild-*-{kind}.qcow2")):
        if path == keep:
            continue
        path.unlink()
        logger.info("Removed old fast build image %s", path)
        removed.append(path)
    return removed


def build_fast(
    ctx: BuildContext,
    inherit_from: Path | None = None,
    project_dir: Path | None = None,
    undeploy: bool = True,
    network: bool = False,
) -> FastBuildResult:
    """Produce a qemu image of the latest build with a local overlay applied.

    When ``project_dir`` contains a Makefile the component is installed
    into a fresh overlay and versioned from git. Otherwise the
    workspace's ``overrides/rootfs`` is used and versioned by timestamp.

    Args:
        ctx: Build context.
        inherit_from: Workspace to take the latest build from.
        project_dir: Component source tree to install.
        undeploy: Remove the previous deployment from the new image.
        network: Give the VM networking.

    Returns:
        FastBuildResult describing the new image.

    Raises:
        ConfigurationError: If the workspace is not a build workspace.
        BuildNotFoundError: If the workspace has no builds.
        ArtifactNotFoundError: If the latest build has no qemu image.
        EmptyOverlayError: If the overlay has no content.
        ExternalToolError: If an external tool or the VM fails.
    """
    root = resolve_fast_workspace(ctx.workdir, inherit_from)
    if inherit_from is not None and root != ctx.workdir:
        ctx = BuildContext.from_settings(ctx.settings, workdir=root)

    build = ctx.store.resolve_build(LATEST)
    meta = ctx.store.read_meta(build)
    previous_image = ctx.store.image_path(build, "qemu")
    parent_commit = ctx.repo.rev_parse(meta["ostree-commit"])
    logger.info(
        "Layering overlay on build %s (commit %s, version %s)",
        build.id,
        parent_commit,
        ctx.repo.read_metadata(parent_commit, "version"),
    )

    outdir = ctx.workdir / FAST_BUILDS_DIR
    outdir.mkdir(parents=True, exist_ok=True)

    with scratch_dir(ctx, prefix="fast-") as scratch:
        if project_dir is not None and (project_dir / "Makefile").is_file():
            overlay = install_project(project_dir, scratch / "overlay")
            version = version_from_git(project_dir)
            consume = True
        else:
            overlay = ctx.workdir / "overrides" / "rootfs"
            version = version_from_timestamp()
            consume = False

        commit = commit_overlay(ctx, overlay, parent_commit, version, consume)

        tmp_image = clone_previous_image(
            ctx.settings, previous_image, scratch / "fastbuild.qcow2"
        )
        args = ["--repo", str(ctx.repo.path), "--commit", commit]
        if not undeploy:
            args.append("--no-undeploy")
        run_in_vm(
            ctx,
            scratch,
            [target_disk(tmp_image, ImageFormat.QCOW2)],
            ctx.settings.offline_update_command,
            args,
            network=network,
            log_path=ctx.tmp_dir / "build-fast.log",
        )

        final_path = finalize_artifact(
            ctx.settings,
            tmp_image,
            outdir / f"fastbuild-{meta['name']}-{commit[:12]}-qemu.qcow2",
        )
        prune_fast_images(outdir, keep=final_path)

    logger.info("Fast build %s (version %s): %s", commit, version, final_path)
    return FastBuildResult(
        build_id=build.id,
        parent_commit=parent_commit,
        commit=commit,
        version=version,
        path=final_path,
    )


__all__ = [
    "FAST_IMAGE_SIZE_MB",
    "KEEP_METADATA",
    "FastBuildResult",
    "build_fast",
    "clone_previous_image",
    "commit_overlay",
    "fast_branch",
    "prune_fast_images",
    "resolve_fast_workspace",
]
