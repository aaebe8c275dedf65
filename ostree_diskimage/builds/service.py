"""Build service module.

This module provides the high-level disk image API:
- build_image(): Main entry point - build one image kind for a build
- Skipping kinds that are already recorded unless forced
- Holding the building marker for the whole mutation
- Finalizing and recording the image and its companion artifacts

Flow: resolve build -> lock -> estimate size -> disk spec -> run disk
builder in a VM -> finalize -> record -> unlock.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ostree_diskimage.builds.artifacts import (
    commit_artifact,
    create_sized_image,
    finalize_artifact,
    format_ext4,
)
from ostree_diskimage.builds.lock import building_lock
from ostree_diskimage.builds.store import LATEST
from ostree_diskimage.context import scratch_dir
from ostree_diskimage.images.config import load_image_config, load_platforms_config
from ostree_diskimage.images.size import block_size_for, estimate_rootfs_size
from ostree_diskimage.images.spec import (
    SecexInputs,
    build_disk_spec,
    check_kind_supported,
    compose_disk_builder_args,
    ignition_pubkey_filename,
    resolve_secex_inputs,
)
from ostree_diskimage.types import ArtifactEntry, ImageFormat
from ostree_diskimage.vm.runner import VmDisk, run_in_vm, target_disk

if TYPE_CHECKING:
    from ostree_diskimage.builds.store import BuildDir
    from ostree_diskimage.context import BuildContext
    from ostree_diskimage.images.kinds import ImageKind

logger = logging.getLogger(__name__)

IGNITION_KEY_KIND = "ignition-gpg-key"

# Scratch disk the protected image VM writes the derived host key to
SECEX_SCRATCH_DISK_MB = 512


@dataclass
class BuildImageResult:
    """Result of a build_image() call.

    Attributes:
        build_id: Build the image belongs to.
        kind: Image kind.
        path: Path of the image artifact.
        skipped: True if the image already existed and nothing was built.
        artifacts: Entries recorded by this call (empty when skipped).
    """

    build_id: str
    kind: ImageKind
    path: Path
    skipped: bool = False
    artifacts: list[ArtifactEntry] = field(default_factory=list)


def _secex_disks(
    ctx: BuildContext, scratch: Path, secex: SecexInputs
) -> list[VmDisk]:
    """Return the extra disks the Secure Execution build needs."""
    if secex.hostkey is not None:
        return [VmDisk(path=secex.hostkey, serial="hostkey", readonly=True)]

    se_disk = scratch / "secex-scratch.img"
    create_sized_image(
        ctx.settings, se_disk, ImageFormat.RAW, SECEX_SCRATCH_DISK_MB
    )
    format_ext4(ctx.settings, se_disk)
    return [
        VmDisk(
            path=secex.genprotimgvm,
            serial="genprotimgvm",
            format=ImageFormat.QCOW2,
            readonly=True,
        ),
        VmDisk(path=se_disk, serial="se", format=ImageFormat.RAW),
    ]


def _existing_image(
    ctx: BuildContext, build: BuildDir, kind: ImageKind
) -> Path | None:
    entry = ctx.store.get_artifact(build, kind.meta_key)
    if entry is None:
        return None
    return build.path / entry.path


def build_image(
    ctx: BuildContext,
    kind: ImageKind,
    build_id: str = LATEST,
    force: bool = False,
    hostkey: Path | None = None,
    genprotimgvm: Path | None = None,
) -> BuildImageResult:
    """Build a disk image of ``kind`` for a build and record it.

    Args:
        ctx: Build context.
        kind: Image kind to build.
        build_id: Build ID or "latest".
        force: Rebuild an existing image and take over a stale marker.
        hostkey: Secure Execution host key.
        genprotimgvm: Protected image VM used when no host key is given.

    Returns:
        BuildImageResult describing the image.

    Raises:
        ConfigurationError: If the kind is unsupported or inputs are missing.
        BuildNotFoundError: If the build does not exist.
        BuildLockedError: If another invocation is building the same image.
        ExternalToolError: If an external tool or the VM fails.
    """
    check_kind_supported(kind, ctx.arch)
    secex: SecexInputs | None = None
    if kind.policy.secure_execution:
        secex = resolve_secex_inputs(ctx.settings, hostkey, genprotimgvm)

    build = ctx.store.resolve_build(build_id)

    existing = _existing_image(ctx, build, kind)
    if existing is not None and not force:
        logger.info("%s image already exists: %s", kind.value, existing)
        return BuildImageResult(
            build_id=build.id, kind=kind, path=existing, skipped=True
        )

    image_config = load_image_config(ctx.config_dir)
    platforms = load_platforms_config(ctx.config_dir)

    with (
        building_lock(build, kind.meta_key, force=force),
        scratch_dir(ctx, prefix=f"{kind.value}-") as scratch,
    ):
        meta = ctx.store.read_meta(build)
        rootfs_mb = estimate_rootfs_size(
            ctx,
            meta["ostree-commit"],
            block_size_for(image_config, ctx.settings),
        )

        pubkey_tmp = scratch / "ignition-pubkey" if secex is not None else None
        spec = build_disk_spec(
            build,
            meta,
            kind,
            rootfs_mb,
            image_config,
            platforms,
            ignition_pubkey_path=pubkey_tmp,
        )

        config_path = spec.write(scratch / "disk-spec.json", image_config)
        platforms_path = scratch / "platforms.json"
        platforms_path.write_text(
            json.dumps(platforms.to_document(ctx.arch), indent=2), encoding="utf-8"
        )

        tmp_image = create_sized_image(
            ctx.settings,
            scratch / f"{spec.imgid}.tmp",
            spec.image_format,
            spec.disk_size_mb,
        )
        disks = [target_disk(tmp_image, spec.image_format, spec.sector_size)]
        if secex is not None:
            disks.extend(_secex_disks(ctx, scratch, secex))

        run_in_vm(
            ctx,
            scratch,
            disks,
            ctx.settings.disk_builder_command,
            compose_disk_builder_args(spec, config_path, platforms_path),
            log_path=ctx.tmp_dir / f"build-{kind.value}.log",
        )

        final_path = finalize_artifact(
            ctx.settings, tmp_image, build.path / spec.imgid, spec.image_format
        )
        artifacts = [commit_artifact(ctx.store, build, kind.meta_key, final_path)]

        if pubkey_tmp is not None and pubkey_tmp.exists():
            key_path = finalize_artifact(
                ctx.settings,
                pubkey_tmp,
                build.path / ignition_pubkey_filename(spec.osname, build.id),
            )
            artifacts.append(
                commit_artifact(
                    ctx.store,
                    build,
                    IGNITION_KEY_KIND,
                    key_path,
                    skip_compression=True,
                )
            )

    logger.info("Built %s image for build %s: %s", kind.value, build.id, final_path)
    return BuildImageResult(
        build_id=build.id, kind=kind, path=final_path, artifacts=artifacts
    )


__all__ = ["IGNITION_KEY_KIND", "BuildImageResult", "build_image"]
