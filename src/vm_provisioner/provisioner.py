"""Provisioner - main entry point for one unattended provisioning run.

Architecture:
    RunWorkingDirectory -> BootMedia -> ConsoleTransport (FIFOs open first)
    -> QEMU (launcher) -> Session -> ScriptRunner -> collect_artifacts

CleanupManager owns every acquired resource and releases it on every exit
path: success, launch failure, a timed-out step, or cancellation.

Example:
    ```python
    from vm_provisioner import ProvisionConfig, Provisioner

    config = ProvisionConfig(source_dir=Path("/srv/arch-boxes"), build_version="20240101.0")
    result = await Provisioner(config).run()
    print(result.artifact.destination, result.artifact.files)
    ```
"""

from __future__ import annotations

import contextlib
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import IO

from vm_provisioner._logging import get_logger
from vm_provisioner.artifacts import collect_artifacts
from vm_provisioner.boot_media import prepare_boot_media
from vm_provisioner.config import ProvisionConfig
from vm_provisioner.launcher import launch_vm
from vm_provisioner.lifecycle import CleanupManager
from vm_provisioner.models import BuildArtifact, Step
from vm_provisioner.script import ScriptReport, ScriptRunner, build_provision_script, validate_script
from vm_provisioner.session import Session
from vm_provisioner.settings import Settings
from vm_provisioner.transport import ConsoleTransport
from vm_provisioner.workdir import RunWorkingDirectory

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """Outcome of a successful run."""

    run_id: str
    artifact: BuildArtifact
    report: ScriptReport
    duration_seconds: float


class Provisioner:
    """Boots the installer VM, drives the script and publishes the output.

    Args:
        config: Run configuration
        settings: Host configuration (default: from environment)
        sinks: Byte streams receiving a live copy of the console
            (the CLI passes stdout)
    """

    def __init__(
        self,
        config: ProvisionConfig,
        settings: Settings | None = None,
        *,
        sinks: Sequence[IO[bytes]] = (),
    ) -> None:
        self.config = config
        self.settings = settings or Settings()
        self.sinks = tuple(sinks)

    def default_script(self, run_dir_name: str) -> tuple[Step, ...]:
        """Default 14-step script for a run whose working directory is ``run_dir_name``."""
        relative = self.config.guest_relative_work_root() / run_dir_name
        guest_workdir = f"{self.config.guest.guest_mount}/{relative.as_posix()}"
        return build_provision_script(
            self.config.guest,
            guest_workdir,
            self.config.build_version,
            mount_tag=self.config.mount_tag,
        )

    async def run(self, script: Sequence[Step] | None = None) -> ProvisionResult:
        """Run the whole provisioning flow once.

        Args:
            script: Steps to run instead of the default script

        Returns:
            ProvisionResult with the published artifacts.

        Raises:
            ConfigError: Work root outside the shared directory
            ScriptError: Invalid script (raised before anything is launched)
            LaunchError: Boot media or QEMU could not be brought up
            ExpectTimeoutError: A step saw no console output in time
            RemoteFailureError: The guest powered off or the console closed mid-script
            ArtifactCopyError: Output could not be published
        """
        config = self.config
        run_id = uuid.uuid4().hex[:12]
        start = time.perf_counter()
        config.guest_relative_work_root()
        if script is not None:
            validate_script(tuple(script))

        logger.info(
            "Starting provisioning run",
            extra={
                "run_id": run_id,
                "source_dir": str(config.source_dir),
                "output_dir": str(config.resolved_output_dir),
            },
        )

        with contextlib.ExitStack() as files:
            sinks: list[IO[bytes]] = list(self.sinks)
            if config.console_log is not None:
                config.console_log.parent.mkdir(parents=True, exist_ok=True)
                sinks.append(files.enter_context(config.console_log.open("ab")))

            async with CleanupManager(run_id) as cleanup:
                workdir = cleanup.track_workdir(await RunWorkingDirectory.create(config.resolved_work_root, run_id))
                steps = tuple(script) if script is not None else self.default_script(workdir.name)

                media = await prepare_boot_media(config, self.settings, workdir)
                transport = cleanup.track_transport(await ConsoleTransport.open_fifos(workdir, sinks=sinks))
                vm = cleanup.track_vm(await launch_vm(self.settings, config, workdir, media))

                session = Session(
                    transport,
                    vm.process,
                    default_timeout=config.default_timeout_seconds,
                    poweroff_timeout=config.poweroff_timeout_seconds,
                )
                report = await ScriptRunner(session).run(steps)
                report.raise_for_failure()

                artifact = await collect_artifacts(workdir.guest_output, config.resolved_output_dir)

        duration = time.perf_counter() - start
        logger.info(
            "Provisioning run complete",
            extra={"run_id": run_id, "duration_seconds": round(duration, 3), "files": list(artifact.files)},
        )
        return ProvisionResult(run_id=run_id, artifact=artifact, report=report, duration_seconds=duration)
