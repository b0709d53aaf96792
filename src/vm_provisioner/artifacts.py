"""Artifact collection: publish the guest's build output on the host.

The guest copies its output directory onto the shared mount, into the run
working directory. From there it is staged next to the destination and then
renamed into place entry by entry, so the destination never holds a
half-copied file. Mode and mtime are preserved (``shutil.copy2``).
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from pathlib import Path

from vm_provisioner._logging import get_logger
from vm_provisioner.exceptions import ArtifactCopyError
from vm_provisioner.models import BuildArtifact

logger = get_logger(__name__)


def _stage_and_publish(source: Path, destination: Path) -> tuple[str, ...]:
    if not source.is_dir():
        raise ArtifactCopyError(f"Build output directory not found: {source}", context={"source": str(source)})
    entries = sorted(source.iterdir())
    if not entries:
        raise ArtifactCopyError(f"Build output directory is empty: {source}", context={"source": str(source)})

    destination.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=destination.parent))
    try:
        for entry in entries:
            if entry.is_dir() and not entry.is_symlink():
                shutil.copytree(entry, staging / entry.name, symlinks=True, copy_function=shutil.copy2)
            else:
                shutil.copy2(entry, staging / entry.name, follow_symlinks=False)

        published = []
        for staged in sorted(staging.iterdir()):
            target = destination / staged.name
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            os.replace(staged, target)
            published.append(staged.name)
        return tuple(published)
    finally:
        shutil.rmtree(staging, ignore_errors=True)


async def collect_artifacts(source: Path, destination: Path) -> BuildArtifact:
    """Copy every entry of ``source`` into ``destination``.

    Args:
        source: Directory the guest wrote its output to (host side)
        destination: Host output directory (created if missing)

    Returns:
        BuildArtifact listing the published entries.

    Raises:
        ArtifactCopyError: Source missing or empty, or any copy/rename failed
    """
    try:
        files = await asyncio.to_thread(_stage_and_publish, source, destination)
    except ArtifactCopyError:
        raise
    except (OSError, shutil.Error) as e:
        raise ArtifactCopyError(
            f"Failed to publish build output to {destination}: {e}",
            context={"source": str(source), "destination": str(destination)},
        ) from e

    logger.info(
        "Build artifacts published",
        extra={"source": str(source), "destination": str(destination), "files": list(files)},
    )
    return BuildArtifact(source=source, destination=destination, files=files)
