"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from vm_provisioner import constants


class Settings(BaseSettings):
    """Host-side runtime configuration from environment variables.

    All settings can be overridden via environment variables with the
    VM_PROVISIONER_ prefix. Example: VM_PROVISIONER_QEMU_BIN=/opt/qemu/bin/qemu-system-x86_64
    """

    model_config = SettingsConfigDict(
        env_prefix="VM_PROVISIONER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Host tools
    qemu_bin: Path = Path("qemu-system-x86_64")
    xorriso_bin: Path = Path("xorriso")
    curl_bin: Path = Path("curl")

    # Boot media
    iso_url: str = constants.DEFAULT_ISO_URL
    mirror: str = constants.DEFAULT_MIRROR

    # Launch
    launch_grace_seconds: float = constants.LAUNCH_GRACE_SECONDS
    """QEMU exiting this soon after fork is treated as a failed launch."""
