"""Run configuration for vm-provisioner.

ProvisionConfig holds everything that describes one provisioning run:
the shared directory, boot media, VM resources and timeouts.

Example:
    ```python
    from pathlib import Path

    from vm_provisioner import ProvisionConfig, Provisioner

    config = ProvisionConfig(source_dir=Path("."), build_version="20240101.0")
    result = await Provisioner(config).run()
    print(result.artifact.files)
    ```
"""

from __future__ import annotations

from pathlib import Path
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vm_provisioner import constants
from vm_provisioner.exceptions import ConfigError
from vm_provisioner.models import GuestProfile


class ProvisionConfig(BaseModel):
    """Configuration for one provisioning run.

    Attributes:
        source_dir: Host directory shared read/write into the guest (9p).
            Holds the build inputs; the working directory lives below it so the
            guest can copy its output back.
        output_dir: Host directory receiving the finished artifacts.
            Default: ``<source_dir>/output``.
        work_root: Parent of the per-run temporary directory. Must be inside
            ``source_dir``. Default: ``<source_dir>/tmp``.
        iso_path: Installer ISO. When None, the newest ``iso_glob`` match in
            ``source_dir`` is used, or the ISO is downloaded.
        kernel_path / initrd_path / iso_volume_id: Pre-extracted boot files.
            When all three are set, the ISO is not inspected.
        console_log: Optional file that receives a copy of every console byte.
            Survives cleanup, unlike the working directory.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Paths
    source_dir: Path = Field(default_factory=Path.cwd, description="Shared host directory")
    output_dir: Path | None = Field(default=None, description="Artifact output directory")
    work_root: Path | None = Field(default=None, description="Parent of per-run temp dir")
    console_log: Path | None = Field(default=None, description="Console transcript file")

    # Boot media
    iso_path: Path | None = Field(default=None, description="Installer ISO")
    iso_glob: str = Field(default=constants.DEFAULT_ISO_GLOB, min_length=1)
    kernel_path: Path | None = None
    initrd_path: Path | None = None
    iso_volume_id: str | None = None

    # VM resources
    cpu_count: int = Field(default=constants.DEFAULT_CPU_COUNT, ge=1, le=64)
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=constants.MIN_MEMORY_MB)
    scratch_disk_mb: int = Field(default=constants.DEFAULT_SCRATCH_DISK_MB, ge=1)
    mount_tag: str = Field(default=constants.DEFAULT_MOUNT_TAG, pattern=r"^[A-Za-z0-9_-]+$")

    # Script
    default_timeout_seconds: int = Field(default=constants.DEFAULT_EXPECT_TIMEOUT_SECONDS, ge=1)
    poweroff_timeout_seconds: int = Field(default=constants.POWEROFF_TIMEOUT_SECONDS, ge=1)
    build_version: str = Field(default="", description="Passed to the remote build script")
    guest: GuestProfile = Field(default_factory=GuestProfile)

    @model_validator(mode="after")
    def _check_boot_overrides(self) -> Self:
        overrides = (self.kernel_path, self.initrd_path, self.iso_volume_id)
        if any(o is not None for o in overrides) and not all(o is not None for o in overrides):
            raise ValueError("kernel_path, initrd_path and iso_volume_id must be set together")
        return self

    @property
    def resolved_output_dir(self) -> Path:
        """Output directory, defaulting to ``<source_dir>/output``."""
        return self.output_dir if self.output_dir is not None else self.source_dir / "output"

    @property
    def resolved_work_root(self) -> Path:
        """Work root, defaulting to ``<source_dir>/tmp``."""
        return self.work_root if self.work_root is not None else self.source_dir / "tmp"

    @property
    def scratch_disk_bytes(self) -> int:
        return self.scratch_disk_mb * 1024 * 1024

    def guest_relative_work_root(self) -> Path:
        """Work root relative to the shared directory, as the guest sees it.

        Raises:
            ConfigError: work root is not below source_dir
        """
        source = self.source_dir.resolve()
        work_root = self.resolved_work_root.resolve()
        try:
            return work_root.relative_to(source)
        except ValueError as e:
            raise ConfigError(
                f"Work root {work_root} must be inside the shared directory {source}",
                context={"work_root": str(work_root), "source_dir": str(source)},
            ) from e
