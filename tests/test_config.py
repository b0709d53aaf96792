"""Unit tests for ProvisionConfig and Settings.

No mocks - uses real paths and environment variables.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from vm_provisioner.config import ProvisionConfig
from vm_provisioner.exceptions import ConfigError
from vm_provisioner.models import GuestProfile
from vm_provisioner.settings import Settings

# ============================================================================
# ProvisionConfig
# ============================================================================


class TestProvisionConfigValidation:
    """Tests for ProvisionConfig field validation."""

    def test_defaults(self, tmp_path: Path) -> None:
        config = ProvisionConfig(source_dir=tmp_path)
        assert config.cpu_count == 4
        assert config.memory_mb == 2048
        assert config.scratch_disk_mb == 4096
        assert config.default_timeout_seconds == 30
        assert config.mount_tag == "host"
        assert config.build_version == ""
        assert config.guest == GuestProfile()

    def test_frozen(self, tmp_path: Path) -> None:
        config = ProvisionConfig(source_dir=tmp_path)
        with pytest.raises(ValidationError):
            config.cpu_count = 8  # type: ignore[misc]

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ProvisionConfig(cpus=4)  # type: ignore[call-arg]

    def test_memory_minimum(self) -> None:
        with pytest.raises(ValidationError):
            ProvisionConfig(memory_mb=10)

    @pytest.mark.parametrize("tag", ["", "has space", "semi;colon", "a,b"])
    def test_mount_tag_pattern(self, tag: str) -> None:
        with pytest.raises(ValidationError):
            ProvisionConfig(mount_tag=tag)

    def test_boot_overrides_all_or_none(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="must be set together"):
            ProvisionConfig(kernel_path=tmp_path / "vmlinuz-x86_64")

        config = ProvisionConfig(
            kernel_path=tmp_path / "vmlinuz-x86_64",
            initrd_path=tmp_path / "initramfs-x86_64.img",
            iso_volume_id="MANJARO",
        )
        assert config.iso_volume_id == "MANJARO"


class TestProvisionConfigPaths:
    def test_derived_directories(self, tmp_path: Path) -> None:
        config = ProvisionConfig(source_dir=tmp_path)
        assert config.resolved_output_dir == tmp_path / "output"
        assert config.resolved_work_root == tmp_path / "tmp"

    def test_explicit_directories(self, tmp_path: Path) -> None:
        config = ProvisionConfig(source_dir=tmp_path, output_dir=tmp_path / "out", work_root=tmp_path / "w")
        assert config.resolved_output_dir == tmp_path / "out"
        assert config.resolved_work_root == tmp_path / "w"

    def test_scratch_disk_bytes(self) -> None:
        assert ProvisionConfig(scratch_disk_mb=3).scratch_disk_bytes == 3 * 1024 * 1024

    def test_guest_relative_work_root(self, tmp_path: Path) -> None:
        config = ProvisionConfig(source_dir=tmp_path, work_root=tmp_path / "build" / "tmp")
        assert config.guest_relative_work_root() == Path("build/tmp")

    def test_work_root_outside_shared_dir(self, tmp_path: Path) -> None:
        config = ProvisionConfig(source_dir=tmp_path / "src", work_root=tmp_path / "elsewhere")
        with pytest.raises(ConfigError, match="must be inside the shared directory") as exc_info:
            config.guest_relative_work_root()
        assert exc_info.value.context["source_dir"] == str((tmp_path / "src").resolve())


# ============================================================================
# Settings
# ============================================================================


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("VM_PROVISIONER_QEMU_BIN", raising=False)
        settings = Settings()
        assert settings.qemu_bin == Path("qemu-system-x86_64")
        assert settings.xorriso_bin == Path("xorriso")
        assert settings.launch_grace_seconds == 0.5

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VM_PROVISIONER_QEMU_BIN", "/opt/qemu/bin/qemu-system-x86_64")
        monkeypatch.setenv("VM_PROVISIONER_MIRROR", "https://mirror.example.org")
        monkeypatch.setenv("VM_PROVISIONER_LAUNCH_GRACE_SECONDS", "2.5")
        settings = Settings()
        assert settings.qemu_bin == Path("/opt/qemu/bin/qemu-system-x86_64")
        assert settings.mirror == "https://mirror.example.org"
        assert settings.launch_grace_seconds == 2.5

    def test_unprefixed_env_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("VM_PROVISIONER_QEMU_BIN", raising=False)
        monkeypatch.setenv("QEMU_BIN", "/nope")
        assert Settings().qemu_bin == Path("qemu-system-x86_64")
