"""Shared fixtures: a fake build workspace and fake external tools.

No test needs qemu, ostree or KVM. ``subprocess.run`` is replaced by
FakeTools, which imitates the few behaviours the code relies on.
"""

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from ostree_diskimage.config import Settings
from ostree_diskimage.context import BuildContext

BUILD_ID = "42.20260101.3.0"
COMMIT = "a" * 64
OSNAME = "fedora-coreos"


def make_settings(workdir: Path, arch: str = "x86_64", **overrides) -> Settings:
    """Create settings for a workspace without consulting the host."""
    values = {
        "workdir": workdir,
        "arch": arch,
        "page_size": 4096,
        "supermin_dir": workdir / "supermin",
        "genprotimgvm": workdir / "no-such-genprotimgvm.qcow2",
        "estimator_command": "estimate-commit-disk-size",
        "disk_builder_command": "/usr/lib/coreos-assembler/create_disk.sh",
        "offline_update_command": "/usr/lib/coreos-assembler/offline-update-impl",
    }
    values.update(overrides)
    return Settings(**values)


def make_workspace(
    root: Path,
    arch: str = "x86_64",
    build_ids: tuple[str, ...] = (BUILD_ID,),
    meta_extra: dict | None = None,
) -> Path:
    """Lay out builds/, src/config and tmp/repo under ``root``."""
    builds = root / "builds"
    builds.mkdir(parents=True, exist_ok=True)
    (builds / "builds.json").write_text(
        json.dumps(
            {
                "schema-version": "1.0.0",
                "builds": [{"id": b, "arches": [arch]} for b in build_ids],
            }
        )
    )
    for build_id in build_ids:
        build_dir = builds / build_id / arch
        build_dir.mkdir(parents=True)
        meta = {
            "name": OSNAME,
            "buildid": build_id,
            "ostree-commit": COMMIT,
            "ref": f"fedora/{arch}/coreos/stable",
            "coreos-assembler.basearch": arch,
            "images": {
                "ostree": {
                    "path": f"{OSNAME}-{build_id}-ostree.{arch}.ociarchive",
                    "sha256": "0" * 64,
                    "size": 1,
                }
            },
        }
        meta.update(meta_extra or {})
        (build_dir / "meta.json").write_text(json.dumps(meta, indent=4))

    config = root / "src" / "config"
    config.mkdir(parents=True)
    (config / "image.yaml").write_text(
        "size: 10\n"
        "extra-kargs:\n"
        "  - mitigations=auto,nosmt\n"
        "squashfs-compression: zstd\n"
    )
    (config / "platforms.yaml").write_text(
        f"{arch}:\n"
        "  metal:\n"
        "    kernel-arguments:\n"
        "      - console=ttyS0,115200n8\n"
        "  qemu:\n"
        "    kernel-arguments:\n"
        "      - console=tty0\n"
        "    size: 16\n"
    )
    (root / "tmp" / "repo").mkdir(parents=True)
    return root


def _option_value(cmd: list[str], prefix: str) -> str | None:
    for arg in cmd:
        for part in arg.split(" "):
            if part.startswith(prefix):
                return part[len(prefix) :]
    return None


def _drive_file(cmd: list[str], serial: str) -> Path | None:
    for arg in cmd:
        fields = dict(f.split("=", 1) for f in arg.split(",") if "=" in f)
        if fields.get("id") == serial and "file" in fields:
            return Path(fields["file"])
    return None


class FakeTools:
    """Stand-in for subprocess.run covering every external tool."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.estimate_mb = 900
        self.guest_rc: int | None = 0
        self.qemu_exit = 0
        self.commit = "b" * 64
        self.scripts: list[str] = []
        self.parents: dict[str, str] = {}
        self.refs: dict[str, str] = {}

    def tool_calls(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if Path(c[0]).name == name]

    def __call__(self, cmd, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        name = Path(cmd[0]).name
        stdout = ""

        if name == "estimate-commit-disk-size":
            stdout = json.dumps({"estimate-mb": {"final": self.estimate_mb}})
        elif name == "qemu-img" and cmd[1] == "create":
            Path(cmd[-2]).write_bytes(b"empty")
        elif name == "qemu-img" and cmd[1] == "convert":
            shutil.copyfile(cmd[-2], cmd[-1])
        elif name.startswith("qemu-system-"):
            self._boot(cmd)
            return subprocess.CompletedProcess(cmd, self.qemu_exit)
        elif name == "ostree" and "commit" in cmd:
            parent = _option_value(cmd, "--parent=")
            if parent:
                self.parents[self.commit] = parent
            self.refs[_option_value(cmd, "--branch=")] = self.commit
            stdout = self.commit + "\n"
        elif name == "ostree" and "rev-parse" in cmd:
            stdout = self._rev_parse(cmd) + "\n"
        elif name == "ostree" and "refs" in cmd:
            stdout = "".join(f"{ref}\n" for ref in self.refs)
        elif name == "ostree" and "show" in cmd:
            stdout = "'42.20260101.3.0'\n"
        elif name == "make":
            destdir = Path(_option_value(cmd, "DESTDIR="))
            (destdir / "usr" / "bin").mkdir(parents=True, exist_ok=True)
            (destdir / "usr" / "bin" / "component").write_text("#!/bin/sh\n")
            (destdir / "etc").mkdir(exist_ok=True)
            (destdir / "etc" / "component.conf").write_text("x=1\n")
        elif name == "git":
            stdout = "v1.2-3-gdeadbeef\n"

        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def _rev_parse(self, cmd: list[str]) -> str:
        target = cmd[-1]
        if target.endswith("^"):
            if target[:-1] not in self.parents:
                raise subprocess.CalledProcessError(
                    1, cmd, output="", stderr="error: Commit has no parent"
                )
            return self.parents[target[:-1]]
        return self.refs.get(target, target)

    def _boot(self, cmd: list[str]) -> None:
        """Pretend the guest ran cmd.sh against the target disk."""
        rc_path = Path(_option_value(cmd, "rc="))
        target = _drive_file(cmd, "target")
        script = (rc_path.parent / "cmd.sh").read_text()
        self.scripts.append(script)
        if self.guest_rc is None:
            return
        if self.guest_rc == 0 and target is not None:
            with target.open("ab") as f:
                f.write(b" populated")
            if "--write-ignition-pubkey-to" in script:
                (rc_path.parent / "ignition-pubkey").write_text("pubkey")
        rc_path.write_text(f"{self.guest_rc}\n")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create an x86_64 workspace with one build."""
    return make_workspace(tmp_path / "ws")


@pytest.fixture
def settings(workspace: Path) -> Settings:
    """Create settings pointing at the workspace."""
    return make_settings(workspace)


@pytest.fixture
def ctx(settings: Settings) -> BuildContext:
    """Create a build context for the workspace."""
    return BuildContext.from_settings(settings)


@pytest.fixture
def fake_tools():
    """Replace subprocess.run with FakeTools."""
    tools = FakeTools()
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", tools)
        yield tools
