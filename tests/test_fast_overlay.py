"""Tests for fast/overlay.py module."""

import subprocess
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from ostree_diskimage.errors import DiskImageError
from ostree_diskimage.fast.overlay import (
    EmptyOverlayError,
    OverlayToolError,
    ensure_overlay_not_empty,
    etc_relocated,
    install_project,
    version_from_git,
    version_from_timestamp,
)


class TestEnsureOverlayNotEmpty:
    """Tests for ensure_overlay_not_empty function."""

    def test_missing(self, tmp_path):
        """A missing overlay should be rejected."""
        with pytest.raises(EmptyOverlayError) as exc_info:
            ensure_overlay_not_empty(tmp_path / "rootfs")
        assert exc_info.value.code == "empty_overlay"

    def test_empty(self, tmp_path):
        """An empty overlay should be rejected."""
        with pytest.raises(EmptyOverlayError):
            ensure_overlay_not_empty(tmp_path)

    def test_with_content(self, tmp_path):
        """Any entry should make the overlay acceptable."""
        (tmp_path / "usr").mkdir()
        ensure_overlay_not_empty(tmp_path)


class TestEtcRelocated:
    """Tests for etc_relocated context manager."""

    def test_moves_and_restores(self, tmp_path):
        """etc should live under usr/etc only inside the block."""
        (tmp_path / "etc").mkdir()
        (tmp_path / "etc" / "motd").write_text("hi")

        with etc_relocated(tmp_path):
            assert (tmp_path / "usr" / "etc" / "motd").read_text() == "hi"
            assert not (tmp_path / "etc").exists()

        assert (tmp_path / "etc" / "motd").read_text() == "hi"
        assert not (tmp_path / "usr").exists()

    def test_restores_on_error(self, tmp_path):
        """etc should be moved back when the block raises."""
        (tmp_path / "etc").mkdir()
        with pytest.raises(RuntimeError):
            with etc_relocated(tmp_path):
                raise RuntimeError("commit failed")
        assert (tmp_path / "etc").is_dir()

    def test_keeps_existing_usr(self, tmp_path):
        """An existing usr/ should be kept when etc is moved back."""
        (tmp_path / "etc").mkdir()
        (tmp_path / "usr" / "bin").mkdir(parents=True)
        with etc_relocated(tmp_path):
            pass
        assert (tmp_path / "usr" / "bin").is_dir()
        assert (tmp_path / "etc").is_dir()

    def test_no_restore(self, tmp_path):
        """With restore off the move should persist."""
        (tmp_path / "etc").mkdir()
        with etc_relocated(tmp_path, restore=False):
            pass
        assert (tmp_path / "usr" / "etc").is_dir()

    def test_no_etc(self, tmp_path):
        """An overlay without etc should be left alone."""
        (tmp_path / "usr").mkdir()
        with etc_relocated(tmp_path):
            pass
        assert sorted(p.name for p in tmp_path.iterdir()) == ["usr"]

    def test_conflict(self, tmp_path):
        """etc and usr/etc together should be refused."""
        (tmp_path / "etc").mkdir()
        (tmp_path / "usr" / "etc").mkdir(parents=True)
        with pytest.raises(DiskImageError, match="both etc/ and usr/etc/"):
            with etc_relocated(tmp_path):
                pass


class TestInstallProject:
    """Tests for install_project function."""

    def test_runs_make_install(self, tmp_path):
        """make install should run in the project with DESTDIR set."""
        project = tmp_path / "project"
        project.mkdir()
        completed = subprocess.CompletedProcess([], 0, stdout="", stderr="")
        with patch("subprocess.run", return_value=completed) as mock_run:
            destdir = install_project(project, tmp_path / "overlay")

        assert destdir.is_dir()
        args, kwargs = mock_run.call_args
        assert args[0] == ["make", "install", f"DESTDIR={tmp_path / 'overlay'}"]
        assert kwargs["cwd"] == project

    def test_failure(self, tmp_path):
        """A failing make should raise OverlayToolError."""
        error = subprocess.CalledProcessError(2, ["make"], stderr="No rule")
        with patch("subprocess.run", MagicMock(side_effect=error)):
            with pytest.raises(OverlayToolError, match="No rule") as exc_info:
                install_project(tmp_path, tmp_path / "overlay")
        assert exc_info.value.exit_code == 2


class TestVersions:
    """Tests for version helpers."""

    def test_git(self, tmp_path):
        """The git description should be stripped."""
        completed = subprocess.CompletedProcess(
            [], 0, stdout="v1.0-2-gabc\n", stderr=""
        )
        with patch("subprocess.run", return_value=completed) as mock_run:
            assert version_from_git(tmp_path) == "v1.0-2-gabc"
        assert mock_run.call_args[0][0] == [
            "git",
            "describe",
            "--tags",
            "--always",
            "--abbrev=42",
        ]

    def test_timestamp(self):
        """Timestamps should be compact UTC."""
        now = datetime(2026, 1, 18, 14, 30, 0, tzinfo=timezone.utc)
        assert version_from_timestamp(now) == "20260118143000"
