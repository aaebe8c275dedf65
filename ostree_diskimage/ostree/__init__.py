"""OSTree repository access through the ostree command line tool."""

from ostree_diskimage.ostree.repo import OstreeError, OstreeRepo

__all__ = ["OstreeError", "OstreeRepo"]
