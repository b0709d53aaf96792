"""Constants for vm-provisioner configuration and limits."""

from typing import Final

# ============================================================================
# VM Resources
# ============================================================================

DEFAULT_CPU_COUNT: Final[int] = 4
"""vCPUs given to the build VM (-smp)."""

DEFAULT_MEMORY_MB: Final[int] = 2048
"""Guest memory in MB (-m)."""

DEFAULT_SCRATCH_DISK_MB: Final[int] = 4096
"""Scratch disk size in MB. Fully preallocated, never sparse."""

MIN_MEMORY_MB: Final[int] = 256
"""Minimum guest memory in MB (the live ISO needs room for its overlay)."""

DEFAULT_MOUNT_TAG: Final[str] = "host"
"""9p mount tag under which the shared host directory is exported."""

COW_SPACE_SIZE: Final[str] = "2G"
"""Copy-on-write space for the live system's root overlay (kernel cmdline)."""

# ============================================================================
# Timeouts
# ============================================================================

DEFAULT_EXPECT_TIMEOUT_SECONDS: Final[int] = 30
"""Idle timeout between console bytes for steps without an override."""

PACKAGE_INSTALL_TIMEOUT_SECONDS: Final[int] = 120
"""Idle timeout for the bulk package update (module dependency rebuild is quiet)."""

REMOTE_BUILD_TIMEOUT_SECONDS: Final[int] = 240
"""Idle timeout for the remote build (image conversion prints nothing for minutes)."""

ARTIFACT_COPY_TIMEOUT_SECONDS: Final[int] = 60
"""Idle timeout for copying build output onto the shared mount."""

POWEROFF_TIMEOUT_SECONDS: Final[int] = 120
"""Maximum wait for QEMU to exit after `shutdown now`."""

LAUNCH_GRACE_SECONDS: Final[float] = 0.5
"""QEMU exiting within this window after fork is reported as a LaunchError."""

EXIT_DRAIN_SECONDS: Final[float] = 0.5
"""After QEMU exits, how long an await may keep reading output still in the console pipe."""

TOOL_TIMEOUT_SECONDS: Final[int] = 300
"""Timeout for host helper tools (xorriso extraction of a multi-GB ISO)."""

DOWNLOAD_TIMEOUT_SECONDS: Final[int] = 3600
"""Timeout for downloading the installer ISO."""

DOWNLOAD_MAX_ATTEMPTS: Final[int] = 3
"""ISO download attempts before giving up."""

DOWNLOAD_RETRY_MIN_SECONDS: Final[float] = 2.0
DOWNLOAD_RETRY_MAX_SECONDS: Final[float] = 30.0

PROCESS_TERM_TIMEOUT_SECONDS: Final[float] = 5.0
"""Grace period after SIGTERM before QEMU is SIGKILLed during cleanup."""

PROCESS_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait after SIGKILL before giving up on reaping."""

# ============================================================================
# Console
# ============================================================================

CONSOLE_READ_CHUNK_BYTES: Final[int] = 4096
"""Max bytes moved from the console pipe to the sinks per read."""

CONSOLE_BUFFER_LIMIT: Final[int] = 1024 * 1024
"""StreamReader limit for bytes mirrored but not yet consumed by the matcher."""

QEMU_OUTPUT_RING_LINES: Final[int] = 200
"""QEMU stdout/stderr lines retained in memory for launch diagnostics."""

SERIAL_PIPE_BASENAME: Final[str] = "guest"
"""QEMU `-serial pipe:<base>` uses <base>.in and <base>.out FIFOs."""

# ============================================================================
# Boot media
# ============================================================================

DEFAULT_ISO_URL: Final[str] = (
    "https://download.manjaro.org/gnome/21.2.5/manjaro-gnome-21.2.5-minimal-220314-linux510.iso"
)
"""Installer ISO fetched when no local copy exists."""

DEFAULT_ISO_GLOB: Final[str] = "manjaro-gnome-*.iso"
"""Pattern for reusing a previously downloaded ISO in the source directory."""

DEFAULT_MIRROR: Final[str] = "https://mirror.pkgbuild.com"
"""Package mirror passed on the kernel command line."""

KERNEL_IMAGE_NAME: Final[str] = "vmlinuz-x86_64"
INITRD_IMAGE_NAME: Final[str] = "initramfs-x86_64.img"

SCRATCH_DISK_NAME: Final[str] = "scratch-disk.img"
GUEST_OUTPUT_DIR_NAME: Final[str] = "output"
"""Directory the guest copies build output into (inside the run workdir)."""
