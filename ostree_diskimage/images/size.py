"""Root filesystem size estimation.

This module handles:
- Running the external estimator against a commit
- Inflating the raw estimate by the overprovisioning margin
- Deriving the total disk size for estimate-sized images

The 35% margin leaves room for the disk builder's in-place growth steps.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from typing import TYPE_CHECKING

from ostree_diskimage.errors import ExternalToolError

if TYPE_CHECKING:
    from ostree_diskimage.config import Settings
    from ostree_diskimage.context import BuildContext
    from ostree_diskimage.images.config import ImageConfig

logger = logging.getLogger(__name__)

# Overprovisioning margin applied to the raw estimate, in percent
SIZE_MARGIN_PERCENT = 35

# Space reserved for the non-rootfs partitions (boot, ESP, BIOS boot...)
RESERVED_PARTITIONS_MB = 513


class EstimatorError(ExternalToolError):
    """Raised when the size estimator fails or returns garbage."""


def apply_margin(raw_mb: int, percent: int = SIZE_MARGIN_PERCENT) -> int:
    """Inflate an estimate by ``percent``, rounding half up.

    Integer arithmetic keeps the result exact (900 MB -> 1215 MB).
    """
    return (raw_mb * (100 + percent) + 50) // 100


def disk_size_mb(rootfs_mb: int) -> int:
    """Return the total disk size for a rootfs of ``rootfs_mb``."""
    return rootfs_mb + RESERVED_PARTITIONS_MB


def block_size_for(image_config: ImageConfig, settings: Settings) -> int | None:
    """Return the block size hint for the estimator.

    fs-verity requires the filesystem block size to equal the page size.
    """
    if image_config.rootfs == "ext4verity":
        return settings.page_size
    return None


def compose_estimator_command(
    settings: Settings,
    repo: str,
    commit: str,
    block_size: int | None = None,
) -> list[str]:
    """Compose the estimator command line."""
    cmd = [*shlex.split(settings.estimator_command), "--repo", repo, commit]
    if block_size is not None:
        cmd.extend(["--blksize", str(block_size)])
    return cmd


def parse_estimate(output: str) -> int:
    """Extract the size in MB from the estimator's JSON output.

    Raises:
        EstimatorError: If the output is not the expected document.
    """
    try:
        data = json.loads(output)
        return int(data["estimate-mb"]["final"])
    except (ValueError, KeyError, TypeError) as e:
        raise EstimatorError(f"Unexpected estimator output: {output!r}") from e


def estimate_raw_size(
    ctx: BuildContext,
    commit: str,
    block_size: int | None = None,
) -> int:
    """Run the estimator and return the raw size in MB.

    Raises:
        EstimatorError: If the estimator fails.
    """
    cmd = compose_estimator_command(
        ctx.settings, str(ctx.repo.path), commit, block_size
    )
    logger.info("Estimating size of %s", commit)
    logger.debug("Running: %s", shlex.join(cmd))

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise EstimatorError(
            f"Size estimation failed: {e.stderr.strip()}", exit_code=e.returncode
        ) from e
    except OSError as e:
        raise EstimatorError(f"Failed to run size estimator: {e}") from e

    return parse_estimate(result.stdout)


def estimate_rootfs_size(
    ctx: BuildContext,
    commit: str,
    block_size: int | None = None,
) -> int:
    """Estimate the rootfs size of ``commit`` in MiB, margin included."""
    raw_mb = estimate_raw_size(ctx, commit, block_size)
    rootfs_mb = apply_margin(raw_mb)
    logger.info(
        "Estimated rootfs size: %d MB raw, %d MB with %d%% margin",
        raw_mb,
        rootfs_mb,
        SIZE_MARGIN_PERCENT,
    )
    return rootfs_mb


__all__ = [
    "RESERVED_PARTITIONS_MB",
    "SIZE_MARGIN_PERCENT",
    "EstimatorError",
    "apply_margin",
    "block_size_for",
    "compose_estimator_command",
    "disk_size_mb",
    "estimate_raw_size",
    "estimate_rootfs_size",
    "parse_estimate",
]
