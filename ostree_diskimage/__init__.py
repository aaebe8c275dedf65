"""OSTree disk image builder - disk images and fast builds from OSTree commits.

This package orchestrates the creation of bootable disk images (metal,
metal4k, dasd, qemu, qemu-secex) from a build's OSTree commit, and the
incremental "fast build" path that layers an overlay on a previous build.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
