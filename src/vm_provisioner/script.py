"""Command script: the fixed provisioning sequence and its runner.

A script is an ordered tuple of Steps. Each step types its ``send`` text
into the console and then waits for its ``expect`` text (or, for the final
step, for the VM to power off). Every step must succeed; the first failure
aborts the run. Nothing is retried: the guest powers itself off on error
(see the ERROR_TRAP_INSTALL step), so there is nothing left to retry on.
"""

from __future__ import annotations

import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.exceptions import ProvisionError, ScriptError
from vm_provisioner.models import GuestProfile, ProvisionState, Step
from vm_provisioner.session import Session

logger = get_logger(__name__)

_SCRIPT_ADAPTER = TypeAdapter(list[Step])


# ============================================================================
# Default script
# ============================================================================


def build_provision_script(
    profile: GuestProfile,
    guest_workdir: str,
    build_version: str = "",
    *,
    mount_tag: str = constants.DEFAULT_MOUNT_TAG,
    package_timeout: int = constants.PACKAGE_INSTALL_TIMEOUT_SECONDS,
    build_timeout: int = constants.REMOTE_BUILD_TIMEOUT_SECONDS,
    copy_timeout: int = constants.ARTIFACT_COPY_TIMEOUT_SECONDS,
) -> tuple[Step, ...]:
    """The 14-step provisioning sequence.

    Args:
        profile: Prompts, credentials and guest paths
        guest_workdir: The run working directory as seen from inside the
            guest (under the 9p mount); build output is copied there
        build_version: Argument for the remote build script (may be empty)
        mount_tag: 9p tag QEMU exports the shared directory under

    Returns:
        Immutable tuple of steps, BOOT_WAIT through SHUTDOWN.
    """
    prompt = profile.shell_prompt
    inputs = profile.build_inputs
    sources = f"{{{','.join(inputs)}}}" if len(inputs) > 1 else inputs[0]
    build_cmd = f"bash -x ./{profile.build_script}"
    if build_version:
        build_cmd = f"{build_cmd} {shlex.quote(build_version)}"
    ignore = " ".join(f"--ignore {pkg}" for pkg in profile.ignored_packages)
    install_cmd = " ".join(part for part in ("pacman -Syu", ignore, "--noconfirm", " ".join(profile.packages)) if part)

    return (
        Step(state=ProvisionState.BOOT_WAIT, expect=profile.login_prompt),
        Step(state=ProvisionState.LOGIN, send=f"{profile.username}\n", expect=profile.password_prompt),
        Step(state=ProvisionState.LOGIN, send=f"{profile.password}\n", expect=prompt),
        Step(state=ProvisionState.SHELL_SWITCH, send="bash\n", expect=prompt),
        Step(state=ProvisionState.ERROR_TRAP_INSTALL, send='trap "shutdown now" ERR\n', expect=prompt),
        Step(
            state=ProvisionState.MOUNT_SHARED,
            send=(
                f"mkdir {profile.guest_mount} && mount -t 9p -o trans=virtio {mount_tag} "
                f"{profile.guest_mount} -oversion=9p2000.L\n"
            ),
            expect=prompt,
        ),
        Step(
            state=ProvisionState.FORMAT_AND_MOUNT_SCRATCH,
            send=(
                f"mkfs.ext4 {profile.scratch_device} && mkdir {profile.scratch_mount}/ && "
                f"mount {profile.scratch_device} {profile.scratch_mount} && cd {profile.scratch_mount}\n"
            ),
            expect=prompt,
        ),
        Step(state=ProvisionState.COPY_INPUTS, send=f"cp -a {profile.guest_mount}/{sources} .\n", expect=prompt),
        Step(
            state=ProvisionState.BIND_PACKAGE_CACHE,
            send=f"mkdir pkg && mount --bind pkg {profile.package_cache}\n",
            expect=prompt,
        ),
        Step(
            state=ProvisionState.WAIT_PACKAGE_KEYRING_INIT,
            send=f"until systemctl is-active {profile.keyring_service}; do sleep 1; done\n",
            expect=prompt,
        ),
        # Module dependency rebuild at the end of the upgrade prints nothing for a while
        Step(
            state=ProvisionState.INSTALL_PACKAGES,
            send=f"{install_cmd}\n",
            expect=prompt,
            timeout_seconds=package_timeout,
        ),
        # Image conversion is silent for minutes
        Step(
            state=ProvisionState.RUN_REMOTE_BUILD,
            send=f"{build_cmd}\n",
            expect=prompt,
            timeout_seconds=build_timeout,
        ),
        Step(
            state=ProvisionState.COPY_ARTIFACTS_OUT,
            send=f"cp -vr --preserve=mode,timestamps {constants.GUEST_OUTPUT_DIR_NAME} {guest_workdir}/\n",
            expect=prompt,
            timeout_seconds=copy_timeout,
        ),
        Step(state=ProvisionState.SHUTDOWN, send="shutdown now\n"),
    )


def load_script(path: Path) -> tuple[Step, ...]:
    """Load a command script from a JSON list of ``{send, await, timeoutSeconds}``.

    Raises:
        ScriptError: File unreadable, not valid JSON, invalid steps, or empty
    """
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ScriptError(f"Cannot read script {path}: {e}", context={"path": str(path)}) from e
    try:
        steps = _SCRIPT_ADAPTER.validate_json(raw)
    except ValidationError as e:
        raise ScriptError(
            f"Invalid script {path}: {e.error_count()} error(s)",
            context={"path": str(path), "errors": e.errors(include_url=False)},
        ) from e
    if not steps:
        raise ScriptError(f"Script {path} has no steps", context={"path": str(path)})
    return tuple(steps)


def validate_script(steps: tuple[Step, ...] | list[Step]) -> None:
    """Reject empty scripts and scripts whose states go backwards.

    Raises:
        ScriptError: Empty script or out-of-order states
    """
    if not steps:
        raise ScriptError("Script has no steps")
    previous: ProvisionState | None = None
    for index, step in enumerate(steps):
        if step.state is None:
            continue
        if previous is not None and step.state.rank < previous.rank:
            raise ScriptError(
                f"Step {index} goes back from {previous.value} to {step.state.value}",
                context={"index": index, "state": step.state.value, "previous": previous.value},
            )
        previous = step.state


# ============================================================================
# Runner
# ============================================================================


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """Result of one executed step."""

    index: int
    state: ProvisionState | None
    succeeded: bool
    duration_ms: int
    position: int | None = None
    error: ProvisionError | None = None


@dataclass
class ScriptReport:
    """Outcome of a whole script run."""

    outcomes: list[StepOutcome] = field(default_factory=list)
    final_state: ProvisionState | None = None
    error: ProvisionError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def steps_completed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    def raise_for_failure(self) -> None:
        """Re-raise the error that aborted the script, if any."""
        if self.error is not None:
            raise self.error


class ScriptRunner:
    """Runs a script against a Session, strictly one step at a time."""

    def __init__(self, session: Session) -> None:
        self.session = session

    async def run_step(self, index: int, step: Step) -> StepOutcome:
        """Send, then await. The send always happens first."""
        start = time.perf_counter()
        try:
            await self.session.send(step.send)
            if step.expect is not None:
                position: int | None = await self.session.expect(step.expect, step.timeout_seconds)
            else:
                await self.session.wait_for_poweroff(step.timeout_seconds)
                position = self.session.position
        except ProvisionError as e:
            return StepOutcome(
                index=index,
                state=step.state,
                succeeded=False,
                duration_ms=round((time.perf_counter() - start) * 1000),
                error=e,
            )
        return StepOutcome(
            index=index,
            state=step.state,
            succeeded=True,
            duration_ms=round((time.perf_counter() - start) * 1000),
            position=position,
        )

    async def run(self, steps: tuple[Step, ...] | list[Step]) -> ScriptReport:
        """Run every step in order, stopping at the first failure.

        Raises:
            ScriptError: Empty script or out-of-order states (nothing is sent)
        """
        validate_script(steps)
        report = ScriptReport()
        for index, step in enumerate(steps):
            outcome = await self.run_step(index, step)
            report.outcomes.append(outcome)
            if not outcome.succeeded:
                report.final_state = ProvisionState.ABORTED
                report.error = outcome.error
                logger.error(
                    "Step failed, aborting script",
                    extra={
                        "index": index,
                        "state": step.state.value if step.state else None,
                        "error": str(outcome.error),
                        "error_type": type(outcome.error).__name__,
                        "duration_ms": outcome.duration_ms,
                    },
                )
                return report
            if step.state is not None:
                report.final_state = step.state
            logger.info(
                "Step complete",
                extra={
                    "index": index,
                    "state": step.state.value if step.state else None,
                    "duration_ms": outcome.duration_ms,
                    "position": outcome.position,
                },
            )
        return report
