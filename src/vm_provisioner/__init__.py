"""vm-provisioner: unattended VM provisioning over a QEMU serial console.

Boots an installer ISO in QEMU, logs in on the serial console, drives a
fixed sequence of shell commands (scratch disk, packages, remote build),
publishes the build output on the host and powers the VM off. Nobody has
to be at the keyboard.

Quick Start:
    ```python
    from pathlib import Path

    from vm_provisioner import ProvisionConfig, Provisioner

    config = ProvisionConfig(source_dir=Path("."), build_version="20240101.0")
    result = await Provisioner(config).run()
    print(result.artifact.files)
    ```

Custom script over a simulated console (tests, other guests):
    ```python
    from vm_provisioner import ConsoleTransport, ScriptRunner, Session, Step

    transport = await ConsoleTransport.from_fds(read_fd, write_fd)
    report = await ScriptRunner(Session(transport)).run(
        [Step(send="root\\n", expect="# ")],
    )
    report.raise_for_failure()
    ```

Requirements:
    - QEMU (KVM optional, falls back to TCG)
    - xorriso, and curl when the ISO must be downloaded
    - Python 3.12+
"""

from vm_provisioner.config import ProvisionConfig
from vm_provisioner.exceptions import (
    ArtifactCopyError,
    BootMediaError,
    ConfigError,
    ConsoleClosedError,
    DownloadError,
    ExpectTimeoutError,
    GuestShutdownError,
    LaunchError,
    ProvisionError,
    RemoteFailureError,
    ScriptError,
    SessionClosedError,
)
from vm_provisioner.lifecycle import CleanupManager
from vm_provisioner.matcher import MatchProgress, expect
from vm_provisioner.models import BuildArtifact, ExpectRequest, GuestProfile, ProvisionState, Step
from vm_provisioner.provisioner import ProvisionResult, Provisioner
from vm_provisioner.script import ScriptReport, ScriptRunner, StepOutcome, build_provision_script, load_script
from vm_provisioner.session import Session
from vm_provisioner.settings import Settings
from vm_provisioner.transport import ConsoleTransport

__all__ = [
    "ArtifactCopyError",
    "BootMediaError",
    "BuildArtifact",
    "CleanupManager",
    "ConfigError",
    "ConsoleClosedError",
    "ConsoleTransport",
    "DownloadError",
    "ExpectRequest",
    "ExpectTimeoutError",
    "GuestProfile",
    "GuestShutdownError",
    "LaunchError",
    "MatchProgress",
    "ProvisionConfig",
    "ProvisionError",
    "ProvisionResult",
    "ProvisionState",
    "Provisioner",
    "RemoteFailureError",
    "ScriptError",
    "ScriptReport",
    "ScriptRunner",
    "Session",
    "SessionClosedError",
    "Settings",
    "Step",
    "StepOutcome",
    "build_provision_script",
    "expect",
    "load_script",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vm-provisioner")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
