"""Exception hierarchy for vm-provisioner.

All exceptions inherit from ProvisionError.

Hierarchy:
    ProvisionError (base)
    ├── LaunchError                ← QEMU could not start / boot artifact missing
    │   └── BootMediaError         ← ISO lookup, extraction or volume id failed
    │       └── DownloadError      ← ISO download failed (retryable)
    ├── ExpectTimeoutError         ← no console byte within the idle timeout
    ├── RemoteFailureError         ← guest went away while being driven
    │   ├── GuestShutdownError     ← QEMU exited (guest error trap powered off)
    │   └── ConsoleClosedError     ← console stream reached EOF
    ├── ArtifactCopyError          ← output directory could not be populated
    ├── ScriptError                ← invalid command script
    ├── ConfigError                ← inconsistent run configuration
    └── SessionClosedError         ← session used after release

Every failure is fatal to the run. Nothing is retried except the ISO
download, which happens before any VM exists.
"""

from __future__ import annotations

from typing import Any


class ProvisionError(Exception):
    """Base exception for all provisioning errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class LaunchError(ProvisionError):
    """VM process failed to start or a required boot artifact is missing.

    The VM never ran, so only temporary files need cleanup.
    """


class BootMediaError(LaunchError):
    """Boot media could not be prepared.

    Raised when no installer ISO is available, or when extracting the
    kernel/initrd or reading the ISO volume id fails.
    """


class DownloadError(BootMediaError):
    """Installer ISO download failed (network issue, may succeed on retry)."""


class ExpectTimeoutError(ProvisionError):
    """An await did not see its target string before the idle deadline.

    The console output captured on the sink up to this point is the only
    diagnostic. The partial match state is included in ``context`` for logs.
    """


class RemoteFailureError(ProvisionError):
    """The guest stopped responding because it failed on its side.

    The guest installs an error trap that powers it off on the first failed
    command, so a remote failure surfaces as the VM disappearing.
    """


class GuestShutdownError(RemoteFailureError):
    """QEMU exited while a step was still waiting for console output.

    Attributes:
        returncode: QEMU exit status (None if unknown)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        returncode: int | None = None,
    ):
        super().__init__(message, context)
        self.returncode = returncode


class ConsoleClosedError(RemoteFailureError):
    """Console stream reached EOF while waiting for a target string."""


class ArtifactCopyError(ProvisionError):
    """Output directory could not be populated after a successful script."""


class ScriptError(ProvisionError):
    """Command script is invalid (empty, unreadable, or states out of order)."""


class ConfigError(ProvisionError):
    """Run configuration is inconsistent (e.g. work root outside shared dir)."""


class SessionClosedError(ProvisionError):
    """Session or transport used after it has been released."""
