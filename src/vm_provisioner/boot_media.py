"""Installer boot media preparation.

The kernel and initrd are extracted from the ISO so QEMU can boot them
directly with a custom command line (``console=ttyS0`` routes kernel and
systemd output to the serial console the automation reads). The ISO's
volume id is needed on that command line for the live system to find its
root image.

Lookup order for the ISO:
1. ``ProvisionConfig.iso_path``
2. newest ``iso_glob`` match in the source directory (a previous download)
3. download ``Settings.iso_url`` into the source directory
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import aiofiles.os
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.config import ProvisionConfig
from vm_provisioner.exceptions import BootMediaError, DownloadError
from vm_provisioner.resource_cleanup import cleanup_file
from vm_provisioner.settings import Settings
from vm_provisioner.subprocess_utils import run_tool
from vm_provisioner.workdir import RunWorkingDirectory

logger = get_logger(__name__)

_VOLUME_ID_PATTERN = re.compile(r"^\s*Volume id\s*:(?P<value>.*)$", re.MULTILINE)


@dataclass(frozen=True, slots=True)
class BootMedia:
    """Everything QEMU needs to boot the installer."""

    iso: Path
    kernel: Path
    initrd: Path
    volume_id: str


def parse_volume_id(xorriso_output: str) -> str:
    """Extract the volume id from ``xorriso -indev ISO`` output.

    xorriso prints e.g. ``Volume id    : 'MANJARO_GNOME_2125'``; quotes and
    spaces are stripped the same way the kernel expects the label.

    Raises:
        BootMediaError: No volume id line present
    """
    match = _VOLUME_ID_PATTERN.search(xorriso_output)
    if match is None:
        raise BootMediaError("xorriso output has no 'Volume id' line", context={"output": xorriso_output[-500:]})
    volume_id = match.group("value").replace("'", "").replace(" ", "").strip()
    if not volume_id:
        raise BootMediaError("ISO has an empty volume id")
    return volume_id


async def find_local_iso(source_dir: Path, pattern: str) -> Path | None:
    """Newest file in ``source_dir`` matching ``pattern``, if any."""
    if not await aiofiles.os.path.isdir(source_dir):
        return None
    candidates = [p for p in source_dir.glob(pattern) if p.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


async def download_iso(url: str, dest_dir: Path, settings: Settings) -> Path:
    """Download the installer ISO with curl, retrying transient failures.

    The file is written under a ``.part`` name and renamed when complete so
    an interrupted download is never picked up as a local ISO. The partial
    file is removed when every attempt fails or the download is cancelled.

    Raises:
        DownloadError: All attempts failed
    """
    filename = Path(urlparse(url).path).name
    if not filename:
        raise BootMediaError(f"Cannot derive a file name from ISO URL {url!r}", context={"url": url})
    target = dest_dir / filename
    partial = dest_dir / f"{filename}.part"

    async def _attempt() -> None:
        try:
            result = await run_tool(
                [str(settings.curl_bin), "-fL", "--retry", "0", "-o", str(partial), url],
                timeout=constants.DOWNLOAD_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise BootMediaError(
                f"curl not found: {settings.curl_bin}", context={"curl_bin": str(settings.curl_bin)}
            ) from e
        except TimeoutError as e:
            raise DownloadError(f"Download of {url} timed out", context={"url": url}) from e
        if result.returncode != 0:
            raise DownloadError(
                f"curl exited with {result.returncode} downloading {url}",
                context={"url": url, "stderr": result.stderr[-500:]},
            )

    logger.info("Downloading installer ISO", extra={"url": url, "dest": str(target)})
    await aiofiles.os.makedirs(dest_dir, exist_ok=True)
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(constants.DOWNLOAD_MAX_ATTEMPTS),
            wait=wait_random_exponential(
                min=constants.DOWNLOAD_RETRY_MIN_SECONDS,
                max=constants.DOWNLOAD_RETRY_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(DownloadError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await _attempt()
        await aiofiles.os.replace(partial, target)
    except BaseException:
        await cleanup_file(partial, filename, "partial download")
        raise
    return target


async def resolve_iso(config: ProvisionConfig, settings: Settings) -> Path:
    """Locate (or fetch) the installer ISO.

    Raises:
        BootMediaError: Explicit ISO missing, or download impossible
    """
    if config.iso_path is not None:
        if not await aiofiles.os.path.isfile(config.iso_path):
            raise BootMediaError(f"ISO not found: {config.iso_path}", context={"iso": str(config.iso_path)})
        return config.iso_path

    local = await find_local_iso(config.source_dir, config.iso_glob)
    if local is not None:
        logger.info("Using local ISO", extra={"iso": str(local)})
        return local

    return await download_iso(settings.iso_url, config.source_dir, settings)


async def read_volume_id(iso: Path, settings: Settings) -> str:
    """Read the ISO 9660 volume id via ``xorriso -indev``."""
    try:
        result = await run_tool(
            [str(settings.xorriso_bin), "-indev", str(iso)],
            timeout=constants.TOOL_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as e:
        raise BootMediaError(f"xorriso not found: {settings.xorriso_bin}") from e
    except TimeoutError as e:
        raise BootMediaError(f"xorriso timed out reading {iso}", context={"iso": str(iso)}) from e
    return parse_volume_id(result.output)


async def extract_boot_files(iso: Path, workdir: RunWorkingDirectory, settings: Settings) -> tuple[Path, Path]:
    """Extract ``boot/`` from the ISO and return (kernel, initrd).

    Raises:
        BootMediaError: Extraction failed or kernel/initrd absent from the ISO
    """
    try:
        result = await run_tool(
            [
                str(settings.xorriso_bin),
                "-osirrox",
                "on",
                "-indev",
                str(iso),
                "-extract",
                "boot",
                str(workdir.boot_dir),
            ],
            timeout=constants.TOOL_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as e:
        raise BootMediaError(f"xorriso not found: {settings.xorriso_bin}") from e
    except TimeoutError as e:
        raise BootMediaError(f"xorriso timed out extracting {iso}", context={"iso": str(iso)}) from e
    if result.returncode != 0:
        raise BootMediaError(
            f"xorriso exited with {result.returncode} extracting boot files",
            context={"iso": str(iso), "stderr": result.stderr[-500:]},
        )

    kernel = workdir.boot_dir / constants.KERNEL_IMAGE_NAME
    initrd = workdir.boot_dir / constants.INITRD_IMAGE_NAME
    for path in (kernel, initrd):
        if not await aiofiles.os.path.isfile(path):
            raise BootMediaError(f"{path.name} missing from ISO boot directory", context={"iso": str(iso)})
    return kernel, initrd


async def prepare_boot_media(
    config: ProvisionConfig,
    settings: Settings,
    workdir: RunWorkingDirectory,
) -> BootMedia:
    """Resolve the ISO and the kernel/initrd/volume id needed to boot it."""
    iso = await resolve_iso(config, settings)

    if config.kernel_path is not None and config.initrd_path is not None and config.iso_volume_id is not None:
        return BootMedia(iso=iso, kernel=config.kernel_path, initrd=config.initrd_path, volume_id=config.iso_volume_id)

    kernel, initrd = await extract_boot_files(iso, workdir, settings)
    volume_id = await read_volume_id(iso, settings)
    logger.info(
        "Boot media ready",
        extra={"run_id": workdir.run_id, "iso": str(iso), "volume_id": volume_id},
    )
    return BootMedia(iso=iso, kernel=kernel, initrd=initrd, volume_id=volume_id)
