"""Data models for vm-provisioner."""

from enum import Enum
from pathlib import Path
from typing import Annotated, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProvisionState(str, Enum):
    """States of the provisioning script, in execution order."""

    BOOT_WAIT = "boot_wait"
    LOGIN = "login"
    SHELL_SWITCH = "shell_switch"
    ERROR_TRAP_INSTALL = "error_trap_install"
    MOUNT_SHARED = "mount_shared"
    FORMAT_AND_MOUNT_SCRATCH = "format_and_mount_scratch"
    COPY_INPUTS = "copy_inputs"
    BIND_PACKAGE_CACHE = "bind_package_cache"
    WAIT_PACKAGE_KEYRING_INIT = "wait_package_keyring_init"
    INSTALL_PACKAGES = "install_packages"
    RUN_REMOTE_BUILD = "run_remote_build"
    COPY_ARTIFACTS_OUT = "copy_artifacts_out"
    SHUTDOWN = "shutdown"
    ABORTED = "aborted"

    @property
    def rank(self) -> int:
        """Position in the linear state order (ABORTED ranks last)."""
        return list(ProvisionState).index(self)


class GuestProfile(BaseModel):
    """Strings the script relies on that must match the guest OS exactly.

    A mismatch surfaces only as an await timeout, so they are grouped here
    rather than scattered through the script.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    login_prompt: str = Field(default="manjaro-gnome login:", min_length=1)
    username: str = "root"
    password: str = "manjaro"
    password_prompt: str = Field(default="Password:", min_length=1)
    shell_prompt: str = Field(default="[manjaro-gnome ~]# ", min_length=1)
    guest_mount: str = "/mnt/arch-boxes"
    scratch_device: str = "/dev/vda"
    scratch_mount: str = "/mnt/scratch-disk"
    build_inputs: tuple[str, ...] = ("box.ovf", "build-inside-vm.sh", "images")
    build_script: str = "build-inside-vm.sh"
    package_cache: str = "/var/cache/pacman/pkg"
    keyring_service: str = "pacman-init"
    packages: tuple[str, ...] = ("qemu-headless", "jq")
    ignored_packages: tuple[str, ...] = ("linux",)


class Step(BaseModel):
    """One command script element: send a string, then await a string.

    ``expect=None`` waits for the guest to power off instead of a string;
    only the final shutdown step uses it. In JSON scripts the fields are
    spelled ``send``, ``await`` and ``timeoutSeconds``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    send: str = ""
    expect: Annotated[str, Field(min_length=1)] | None = Field(default=None, alias="await")
    timeout_seconds: Annotated[int, Field(ge=1)] | None = Field(default=None, alias="timeoutSeconds")
    state: ProvisionState | None = None

    @model_validator(mode="after")
    def _check_not_empty(self) -> Self:
        if not self.send and self.expect is None and self.state is not ProvisionState.SHUTDOWN:
            raise ValueError("step must send something or await something")
        if self.state is ProvisionState.ABORTED:
            raise ValueError("ABORTED is a terminal state, not a step")
        return self


class ExpectRequest(BaseModel):
    """A single await: literal target plus per-byte idle deadline."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str = Field(min_length=1, description="Literal, case-sensitive target")
    timeout_seconds: float = Field(gt=0, description="Max idle seconds between console bytes")

    @property
    def target_bytes(self) -> bytes:
        """Target as it appears on the wire."""
        return self.target.encode()


class BuildArtifact(BaseModel):
    """Files produced by the remote build and published on the host."""

    model_config = ConfigDict(frozen=True)

    source: Path = Field(description="Directory under the shared mount the guest wrote to")
    destination: Path = Field(description="Host output directory")
    files: tuple[str, ...] = Field(default=(), description="Published entries, relative to destination")
