"""Disposable virtual machine execution."""

from ostree_diskimage.vm.runner import VmDisk, VmExecutionError, run_in_vm

__all__ = ["VmDisk", "VmExecutionError", "run_in_vm"]
