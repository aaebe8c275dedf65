"""Run commands inside a disposable virtual machine.

This module handles:
- Describing block devices attached to the VM
- Composing the QEMU command that boots the supermin appliance
- Passing the command into the guest and reading back its exit status
- Capturing the VM console to a log file

The workspace is shared into the guest over 9p at the same path, so host
paths under the workspace are valid inside the VM. The guest init runs
``<scratch>/cmd.sh`` and writes its exit status to ``<scratch>/rc``.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from ostree_diskimage.errors import ExternalToolError
from ostree_diskimage.types import ImageFormat

if TYPE_CHECKING:
    from ostree_diskimage.config import Settings
    from ostree_diskimage.context import BuildContext

logger = logging.getLogger(__name__)

TARGET_SERIAL = "target"
CMD_SCRIPT = "cmd.sh"
RC_FILE = "rc"

_CONSOLES = {
    "aarch64": "ttyAMA0",
    "ppc64le": "hvc0",
    "s390x": "ttysclp0",
}


class VmExecutionError(ExternalToolError):
    """Raised when the VM or the command inside it fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message, exit_code=exit_code)
        self.log_path = log_path


@dataclass(frozen=True)
class VmDisk:
    """A block device attached to the VM.

    The guest finds the device by ``serial`` under /dev/disk/by-id, which
    does not depend on enumeration order.

    Attributes:
        path: Image file on the host.
        serial: Device serial exposed to the guest.
        format: Image format.
        cache: QEMU cache mode (``unsafe`` is fine for unpromoted images).
        readonly: Attach read-only.
        snapshot: Discard guest writes.
        sector_size: Physical and logical block size, or None for the default.
    """

    path: Path
    serial: str
    format: ImageFormat = ImageFormat.RAW
    cache: str | None = None
    readonly: bool = False
    snapshot: bool = False
    sector_size: int | None = None

    def to_qemu_args(self) -> list[str]:
        """Return the ``-drive``/``-device`` arguments for this disk."""
        drive = [
            "if=none",
            f"id={self.serial}",
            f"format={self.format.value}",
            f"file={self.path}",
        ]
        if self.cache:
            drive.append(f"cache={self.cache}")
        if self.readonly:
            drive.append("readonly=on")
        if self.snapshot:
            drive.append("snapshot=on")

        device = ["virtio-blk", f"serial={self.serial}", f"drive={self.serial}"]
        if self.sector_size is not None:
            device.append(f"physical_block_size={self.sector_size}")
            device.append(f"logical_block_size={self.sector_size}")

        return ["-drive", ",".join(drive), "-device", ",".join(device)]


def target_disk(
    path: Path,
    image_format: ImageFormat,
    sector_size: int | None = None,
) -> VmDisk:
    """Return the output disk, attached with ``serial=target`` and unsafe caching."""
    return VmDisk(
        path=path,
        serial=TARGET_SERIAL,
        format=image_format,
        cache="unsafe",
        sector_size=sector_size,
    )


def write_command_script(scratch: Path, command: str, args: list[str]) -> Path:
    """Write the script the guest init executes."""
    script = scratch / CMD_SCRIPT
    script.write_text(
        "#!/bin/bash\nset -euo pipefail\n" + shlex.join([command, *args]) + "\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


def compose_vm_command(
    settings: Settings,
    workdir: Path,
    scratch: Path,
    disks: list[VmDisk],
    network: bool = False,
) -> list[str]:
    """Compose the QEMU command line.

    Args:
        settings: Application settings (binaries, memory, CPUs).
        workdir: Workspace shared into the guest.
        scratch: Scratch directory holding the command script.
        disks: Extra block devices, in attachment order.
        network: Give the guest user-mode networking.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    appliance = settings.supermin_dir or workdir / "tmp" / "supermin.build"
    cmd = [
        settings.effective_qemu_binary,
        "-nodefaults",
        "-display",
        "none",
        "-no-reboot",
        "-machine",
        "accel=kvm:tcg",
        "-cpu",
        "max",
        "-m",
        str(settings.vm_memory_mb),
        "-smp",
        str(settings.vm_cpus),
        "-kernel",
        str(appliance / "kernel"),
        "-initrd",
        str(appliance / "initrd"),
        "-serial",
        "stdio",
        "-virtfs",
        f"local,id=workdir,path={workdir},security_model=none,mount_tag=workdir",
        "-append",
        (
            f"root=/dev/vda console={_CONSOLES.get(settings.arch, 'ttyS0')} "
            "selinux=1 enforcing=0 autorelabel=1 "
            f"workdir={workdir} cmd={scratch / CMD_SCRIPT} rc={scratch / RC_FILE}"
        ),
    ]
    # the appliance root is always the first disk
    cmd.extend(
        VmDisk(
            path=appliance / "root",
            serial="root",
            snapshot=True,
        ).to_qemu_args()
    )
    for disk in disks:
        cmd.extend(disk.to_qemu_args())

    if network:
        cmd.extend(["-netdev", "user,id=eth0", "-device", "virtio-net-pci,netdev=eth0"])
    else:
        cmd.extend(["-nic", "none"])
    return cmd


def read_exit_status(scratch: Path) -> int | None:
    """Return the guest command's exit status, or None if it never ran."""
    rc_path = scratch / RC_FILE
    if not rc_path.exists():
        return None
    try:
        return int(rc_path.read_text(encoding="utf-8").strip())
    except ValueError:
        return None


def run_in_vm(
    ctx: BuildContext,
    scratch: Path,
    disks: list[VmDisk],
    command: str,
    args: list[str],
    network: bool = False,
    log_path: Path | None = None,
) -> None:
    """Run ``command`` inside a disposable VM and wait for it to finish.

    On success the command has populated the attached disks in place. On
    failure their contents are undefined and must not be promoted.

    Args:
        ctx: Build context.
        scratch: Per-run scratch directory inside the workspace.
        disks: Extra block devices (target disk first).
        command: Executable inside the guest.
        args: Arguments for the command.
        network: Enable guest networking.
        log_path: Console log file (defaults to ``<scratch>/vm.log``).

    Raises:
        VmExecutionError: If QEMU or the command exits non-zero.
    """
    if log_path is None:
        log_path = scratch / "vm.log"

    (scratch / RC_FILE).unlink(missing_ok=True)
    write_command_script(scratch, command, args)
    cmd = compose_vm_command(ctx.settings, ctx.workdir, scratch, disks, network)

    cmd_str = shlex.join(cmd)
    logger.info("Running in VM: %s", shlex.join([command, *args]))
    logger.debug("VM command: %s", cmd_str)

    started_at = datetime.now(timezone.utc)
    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {ctx.workdir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=ctx.workdir,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                check=False,
            )
    except OSError as e:
        raise VmExecutionError(f"Failed to start VM: {e}", log_path=log_path) from e

    finished_at = datetime.now(timezone.utc)
    rc = read_exit_status(scratch)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# QEMU exit code: {result.returncode}\n")
        log_file.write(f"# Command exit code: {rc}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if result.returncode != 0:
        message = f"VM exited with code {result.returncode}. See log: {log_path}"
        logger.error(message)
        raise VmExecutionError(message, exit_code=result.returncode, log_path=log_path)
    if rc is None:
        message = f"Command did not report an exit status. See log: {log_path}"
        logger.error(message)
        raise VmExecutionError(message, log_path=log_path)
    if rc != 0:
        message = f"{command} failed with exit code {rc}. See log: {log_path}"
        logger.error(message)
        raise VmExecutionError(message, exit_code=rc, log_path=log_path)


__all__ = [
    "CMD_SCRIPT",
    "RC_FILE",
    "TARGET_SERIAL",
    "VmDisk",
    "VmExecutionError",
    "compose_vm_command",
    "read_exit_status",
    "run_in_vm",
    "target_disk",
    "write_command_script",
]
