"""Tests for images/spec.py module.

Tests per-kind sizing, kernel arguments, disk builder flags and
Secure Execution input resolution.
"""

import json

import pytest
from conftest import BUILD_ID, COMMIT, make_settings, make_workspace

from ostree_diskimage.builds.store import BuildStore
from ostree_diskimage.errors import ConfigurationError
from ostree_diskimage.images.config import (
    ImageConfig,
    PlatformConfig,
    PlatformsConfig,
    load_image_config,
    load_platforms_config,
)
from ostree_diskimage.images.kinds import ImageKind
from ostree_diskimage.images.spec import (
    IGNITION_PUBKEY_FLAG,
    NO_BIOS_BOOTLOADER_FLAG,
    SECURE_EXECUTION_FLAG,
    build_disk_spec,
    check_kind_supported,
    compose_disk_builder_args,
    compute_sizes,
    ignition_pubkey_filename,
    image_filename,
    resolve_secex_inputs,
)
from ostree_diskimage.types import ImageFormat


def _spec_inputs(root, arch="x86_64"):
    store = BuildStore(root / "builds", arch)
    build = store.resolve_build()
    config_dir = root / "src" / "config"
    return (
        build,
        store.read_meta(build),
        load_image_config(config_dir),
        load_platforms_config(config_dir),
    )


class TestCheckKindSupported:
    """Tests for check_kind_supported function."""

    def test_dasd_on_x86(self):
        """dasd should be rejected outside s390x."""
        with pytest.raises(ConfigurationError, match="s390x"):
            check_kind_supported(ImageKind.DASD, "x86_64")

    def test_dasd_on_s390x(self):
        """dasd should be accepted on s390x."""
        check_kind_supported(ImageKind.DASD, "s390x")

    def test_secex_on_aarch64(self):
        """Secure Execution should be rejected outside s390x."""
        with pytest.raises(ConfigurationError):
            check_kind_supported(ImageKind.QEMU_SECEX, "aarch64")

    @pytest.mark.parametrize("arch", ["x86_64", "aarch64", "ppc64le", "s390x"])
    def test_metal_everywhere(self, arch):
        """metal should be buildable on every arch."""
        check_kind_supported(ImageKind.METAL, arch)


class TestResolveSecexInputs:
    """Tests for resolve_secex_inputs function."""

    def test_hostkey(self, tmp_path):
        """An existing host key should be used as is."""
        hostkey = tmp_path / "HKD.crt"
        hostkey.write_text("key")
        settings = make_settings(tmp_path)
        inputs = resolve_secex_inputs(settings, hostkey=hostkey)
        assert inputs.hostkey == hostkey
        assert inputs.genprotimgvm is None

    def test_missing_hostkey(self, tmp_path):
        """A host key that does not exist should be rejected."""
        with pytest.raises(ConfigurationError, match="Host key not found"):
            resolve_secex_inputs(make_settings(tmp_path), hostkey=tmp_path / "nope")

    def test_default_genprotimgvm(self, tmp_path):
        """Without a host key the configured protected image VM should be used."""
        vm = tmp_path / "genprotimgvm.qcow2"
        vm.write_text("qcow2")
        settings = make_settings(tmp_path, genprotimgvm=vm)
        assert resolve_secex_inputs(settings).genprotimgvm == vm

    def test_neither_available(self, tmp_path):
        """Missing both inputs should be a configuration error."""
        with pytest.raises(ConfigurationError, match="--hostkey"):
            resolve_secex_inputs(make_settings(tmp_path))


class TestFilenames:
    """Tests for artifact file names."""

    def test_image_filename(self):
        """Image names should carry name, build, kind, arch and format."""
        assert (
            image_filename("fcos", "1.0", ImageKind.QEMU, "x86_64")
            == "fcos-1.0-qemu.x86_64.qcow2"
        )
        assert (
            image_filename("fcos", "1.0", ImageKind.DASD, "s390x")
            == "fcos-1.0-dasd.s390x.raw"
        )

    def test_ignition_pubkey_filename(self):
        """The Ignition key name should follow the build."""
        assert (
            ignition_pubkey_filename("fcos", "1.0")
            == "fcos-1.0-ignition-secex-key.gpg.pub"
        )


class TestComputeSizes:
    """Tests for compute_sizes function."""

    def test_metal(self):
        """metal should add the reserved partitions and fill the disk."""
        sizes = compute_sizes(
            ImageKind.METAL, 1215, ImageConfig(), PlatformsConfig(), "x86_64"
        )
        assert sizes == (1728, 0)

    def test_qemu_platform_size(self):
        """qemu should take the platform size in GiB."""
        platforms = PlatformsConfig(
            arches={"x86_64": {"qemu": PlatformConfig(size=16)}}
        )
        disk, rootfs = compute_sizes(
            ImageKind.QEMU, 1215, ImageConfig(), platforms, "x86_64"
        )
        assert disk == 16 * 1024
        assert rootfs == 1215

    def test_qemu_image_size_fallback(self):
        """Without a platform size the image config size should be used."""
        disk, _ = compute_sizes(
            ImageKind.QEMU, 1215, ImageConfig(size=12), PlatformsConfig(), "x86_64"
        )
        assert disk == 12 * 1024

    def test_qemu_platform_rootfs_size(self):
        """A platform rootfs size should override the estimate."""
        platforms = PlatformsConfig(
            arches={"x86_64": {"qemu": PlatformConfig(rootfs_size=4096)}}
        )
        _, rootfs = compute_sizes(
            ImageKind.QEMU, 1215, ImageConfig(rootfs_size=2048), platforms, "x86_64"
        )
        assert rootfs == 4096

    def test_qemu_image_rootfs_size(self):
        """The image config rootfs size should be used next."""
        _, rootfs = compute_sizes(
            ImageKind.QEMU,
            1215,
            ImageConfig(rootfs_size=2048),
            PlatformsConfig(),
            "x86_64",
        )
        assert rootfs == 2048


class TestBuildDiskSpec:
    """Tests for build_disk_spec function."""

    def test_metal(self, workspace):
        """metal on x86_64 should be a raw image with the metal platform."""
        build, meta, image_config, platforms = _spec_inputs(workspace)
        spec = build_disk_spec(
            build, meta, ImageKind.METAL, 1215, image_config, platforms
        )

        assert spec.imgid == f"fedora-coreos-{BUILD_ID}-metal.x86_64.raw"
        assert spec.image_format is ImageFormat.RAW
        assert spec.disk_size_mb == 1728
        assert spec.rootfs_size_mb == 0
        assert spec.platform == "metal"
        assert spec.ostree_commit == COMMIT
        assert spec.ostree_ref == "fedora/x86_64/coreos/stable"
        assert spec.ostree_container == str(
            build.path / f"fedora-coreos-{BUILD_ID}-ostree.x86_64.ociarchive"
        )
        assert spec.sector_size is None
        assert spec.extra_flags == []

    def test_kargs(self, workspace):
        """Kernel arguments should end with the Ignition platform id."""
        build, meta, image_config, platforms = _spec_inputs(workspace)
        spec = build_disk_spec(
            build, meta, ImageKind.METAL, 1215, image_config, platforms
        )
        assert spec.kargs == (
            "mitigations=auto,nosmt console=ttyS0,115200n8 ignition.platform.id=metal"
        )

    def test_metal4k_on_x86(self, workspace):
        """metal4k on x86_64 should be 4K and skip the BIOS bootloader."""
        build, meta, image_config, platforms = _spec_inputs(workspace)
        spec = build_disk_spec(
            build, meta, ImageKind.METAL4K, 1215, image_config, platforms
        )
        assert spec.sector_size == 4096
        assert spec.platform == "metal"
        assert NO_BIOS_BOOTLOADER_FLAG in spec.extra_flags
        assert spec.kargs.endswith("ignition.platform.id=metal")

    def test_metal4k_on_aarch64(self, tmp_path):
        """metal4k on other arches should keep the default bootloader flags."""
        root = make_workspace(tmp_path / "ws", arch="aarch64")
        build, meta, image_config, platforms = _spec_inputs(root, "aarch64")
        spec = build_disk_spec(
            build, meta, ImageKind.METAL4K, 1215, image_config, platforms
        )
        assert spec.sector_size == 4096
        assert spec.extra_flags == []

    def test_dasd(self, tmp_path):
        """dasd should be metal at the Ignition level."""
        root = make_workspace(tmp_path / "ws", arch="s390x")
        build, meta, image_config, platforms = _spec_inputs(root, "s390x")
        spec = build_disk_spec(
            build, meta, ImageKind.DASD, 1215, image_config, platforms
        )
        assert spec.imgid == f"fedora-coreos-{BUILD_ID}-dasd.s390x.raw"
        assert spec.platform == "metal"
        assert spec.sector_size == 4096
        assert spec.kargs.endswith("ignition.platform.id=metal")

    def test_qemu(self, workspace):
        """qemu should be qcow2 sized from the platform table."""
        build, meta, image_config, platforms = _spec_inputs(workspace)
        spec = build_disk_spec(
            build, meta, ImageKind.QEMU, 1215, image_config, platforms
        )
        assert spec.imgid.endswith("-qemu.x86_64.qcow2")
        assert spec.image_format is ImageFormat.QCOW2
        assert spec.disk_size_mb == 16384
        assert spec.rootfs_size_mb == 1215
        assert spec.kargs == (
            "mitigations=auto,nosmt console=tty0 ignition.platform.id=qemu"
        )

    def test_qemu_secex(self, tmp_path):
        """Secure Execution should add its flags and the key path."""
        root = make_workspace(tmp_path / "ws", arch="s390x")
        build, meta, image_config, platforms = _spec_inputs(root, "s390x")
        pubkey = tmp_path / "pubkey"
        spec = build_disk_spec(
            build,
            meta,
            ImageKind.QEMU_SECEX,
            1215,
            image_config,
            platforms,
            ignition_pubkey_path=pubkey,
        )
        assert spec.imgid == f"fedora-coreos-{BUILD_ID}-qemu-secex.s390x.qcow2"
        assert spec.extra_flags == [
            SECURE_EXECUTION_FLAG,
            IGNITION_PUBKEY_FLAG,
            str(pubkey),
        ]

    def test_document(self, workspace, tmp_path):
        """The written document should carry config and dynamic fields."""
        build, meta, image_config, platforms = _spec_inputs(workspace)
        spec = build_disk_spec(
            build, meta, ImageKind.METAL, 1215, image_config, platforms
        )
        path = spec.write(tmp_path / "spec" / "disk-spec.json", image_config)

        document = json.loads(path.read_text())
        assert document["ostree-commit"] == COMMIT
        assert document["osname"] == "fedora-coreos"
        assert document["buildid"] == BUILD_ID
        assert document["imgid"] == spec.imgid
        assert document["rootfs-size"] == 0
        assert document["deploy-via-container"] is False
        assert document["squashfs-compression"] == "zstd"
        assert document["extra-kargs"] == ["mitigations=auto,nosmt"]


class TestComposeDiskBuilderArgs:
    """Tests for compose_disk_builder_args function."""

    def test_args(self, workspace, tmp_path):
        """The arguments should point at the spec and platform documents."""
        build, meta, image_config, platforms = _spec_inputs(workspace)
        spec = build_disk_spec(
            build, meta, ImageKind.METAL4K, 1215, image_config, platforms
        )
        args = compose_disk_builder_args(
            spec, tmp_path / "disk-spec.json", tmp_path / "platforms.json"
        )
        assert args[:2] == ["--config", str(tmp_path / "disk-spec.json")]
        assert args[args.index("--platform") + 1] == "metal"
        assert args[args.index("--kargs") + 1] == spec.kargs
        assert args[-1] == NO_BIOS_BOOTLOADER_FLAG
