"""QEMU command line builder for the provisioning VM.

The VM boots the installer's kernel/initrd directly (no bootloader) so the
kernel command line can route the console to the ISA serial port, which
QEMU connects to the host FIFO pair.
"""

from pathlib import Path

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.boot_media import BootMedia
from vm_provisioner.config import ProvisionConfig
from vm_provisioner.settings import Settings
from vm_provisioner.workdir import RunWorkingDirectory

logger = get_logger(__name__)


def build_kernel_cmdline(volume_id: str, mirror: str) -> str:
    """Kernel command line for the live installer.

    misobasedir/misolabel locate the live root image on the CD; console=ttyS0
    sends kernel and systemd output to the serial console; ip=dhcp and
    net.ifnames=0 bring up eth0 early so the package mirror is reachable.
    """
    params = [
        "lang=en_US",
        "keytable=us",
        "tz=UTC",
        "quiet",
        "systemd.show_status=1",
        "misobasedir=manjaro",
        f"misolabel={volume_id}",
        "driver=free",
        "3",
        f"cow_spacesize={constants.COW_SPACE_SIZE}",
        "ip=dhcp",
        "net.ifnames=0",
        "console=ttyS0",
        f"mirror={mirror}",
    ]
    return " ".join(params)


def build_qemu_cmd(
    settings: Settings,
    config: ProvisionConfig,
    workdir: RunWorkingDirectory,
    media: BootMedia,
    *,
    scratch_disk: Path | None = None,
) -> list[str]:
    """Build the QEMU argv for one provisioning run.

    Args:
        settings: Host configuration (QEMU binary, package mirror)
        config: Run configuration (resources, shared directory, mount tag)
        workdir: Run working directory (serial FIFO base, scratch disk)
        media: Installer ISO, kernel, initrd and volume id
        scratch_disk: Scratch disk image (default: the workdir's)

    Returns:
        QEMU command as list of strings
    """
    disk = scratch_disk if scratch_disk is not None else workdir.scratch_disk
    source_dir = config.source_dir.resolve()

    cmd = [
        str(settings.qemu_bin),
        # KVM when available, software emulation otherwise
        "-machine",
        "accel=kvm:tcg",
        "-smp",
        str(config.cpu_count),
        "-m",
        str(config.memory_mb),
        "-net",
        "nic",
        "-net",
        "user",
        "-kernel",
        str(media.kernel),
        "-initrd",
        str(media.initrd),
        "-append",
        build_kernel_cmdline(media.volume_id, settings.mirror),
        "-drive",
        f"file={disk},if=virtio,format=raw",
        "-drive",
        f"file={media.iso},if=virtio,media=cdrom,format=raw,readonly=on",
        # 9p share: inputs in, artifacts out
        "-virtfs",
        f"local,path={source_dir},mount_tag={config.mount_tag},security_model=none",
        "-monitor",
        "none",
        "-serial",
        f"pipe:{workdir.serial_base}",
        "-nographic",
    ]

    logger.debug(
        "QEMU command built",
        extra={"run_id": workdir.run_id, "cmd": cmd},
    )
    return cmd
