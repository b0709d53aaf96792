"""Command-line interface for vm-provisioner.

Usage:
    vmprov                                   # Provision using ./ as shared dir
    vmprov --build-version 20240101.0        # Pass a version to the remote build
    vmprov --iso ./manjaro.iso --console-log boot.log
    vmprov --script steps.json               # Custom command script

The guest console is mirrored to stdout as it arrives; logs go to stderr.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from vm_provisioner import (
    ExpectTimeoutError,
    GuestShutdownError,
    LaunchError,
    ProvisionConfig,
    ProvisionError,
    Provisioner,
    RemoteFailureError,
    ScriptError,
    __version__,
    load_script,
)
from vm_provisioner._logging import configure_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_PROVISION_ERROR = 125
EXIT_INTERRUPTED = 130  # 128 + SIGINT


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def is_tty() -> bool:
    """Check if stderr is a TTY (for the completion footer)."""
    return sys.stderr.isatty()


async def run_provision(config: ProvisionConfig, script_path: Path | None, quiet: bool) -> int:
    """Run one provisioning pass and return the exit code.

    Args:
        config: Run configuration
        script_path: Optional JSON command script replacing the default one
        quiet: Suppress the completion footer

    Returns:
        Exit code to return from CLI
    """
    try:
        script = load_script(script_path) if script_path is not None else None
        result = await Provisioner(config, sinks=[sys.stdout.buffer]).run(script)

    except ScriptError as e:
        click.echo(
            format_error(
                "Invalid command script",
                e.message,
                ["Scripts are a JSON list of {\"send\", \"await\", \"timeoutSeconds\"} objects"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    except ExpectTimeoutError as e:
        click.echo(
            format_error(
                "Console wait timed out",
                e.message,
                [
                    "Scroll back through the console output above for the last thing the guest printed",
                    "Increase the default idle timeout with --timeout",
                    "Check that the login and shell prompts match the installer image",
                ],
            ),
            err=True,
        )
        return EXIT_TIMEOUT

    except GuestShutdownError as e:
        click.echo(
            format_error(
                "Guest powered off mid-script",
                e.message,
                ["A remote command failed and triggered the guest's error trap; see the console output above"],
            ),
            err=True,
        )
        return EXIT_PROVISION_ERROR

    except RemoteFailureError as e:
        click.echo(format_error("Guest console lost", e.message), err=True)
        return EXIT_PROVISION_ERROR

    except LaunchError as e:
        click.echo(
            format_error(
                "VM could not be launched",
                e.message,
                [
                    "Check that qemu-system-x86_64 and xorriso are installed",
                    "Set VM_PROVISIONER_QEMU_BIN to use a different QEMU binary",
                    "Make sure there is enough free space for the scratch disk",
                ],
            ),
            err=True,
        )
        return EXIT_PROVISION_ERROR

    except ProvisionError as e:
        click.echo(format_error("Provisioning failed", e.message), err=True)
        return EXIT_PROVISION_ERROR

    if is_tty() and not quiet:
        click.echo(
            click.style(
                f"✓ Done in {result.duration_seconds:.1f}s: {len(result.artifact.files)} file(s) in "
                f"{result.artifact.destination}",
                fg="green",
                dim=True,
            ),
            err=True,
        )
    return EXIT_SUCCESS


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "-s",
    "--source-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path(),
    show_default=True,
    help="Directory shared into the guest (build inputs)",
)
@click.option(
    "-o",
    "--output",
    "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Artifact output directory [default: SOURCE_DIR/output]",
)
@click.option("--iso", "iso_path", type=click.Path(dir_okay=False, path_type=Path), help="Installer ISO")
@click.option("--build-version", default="", help="Version passed to the remote build script")
@click.option(
    "--script",
    "script_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON command script replacing the default sequence",
)
@click.option("--cpus", default=4, show_default=True, help="vCPUs for the VM")
@click.option("-m", "--memory", default=2048, show_default=True, help="Memory in MB")
@click.option("--disk-size", default=4096, show_default=True, help="Scratch disk size in MB")
@click.option("-t", "--timeout", default=30, show_default=True, help="Default console idle timeout in seconds")
@click.option(
    "--console-log",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also append the console transcript to this file",
)
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.version_option(__version__, "-V", "--version", prog_name="vm-provisioner")
def main(
    source_dir: Path,
    output_dir: Path | None,
    iso_path: Path | None,
    build_version: str,
    script_path: Path | None,
    cpus: int,
    memory: int,
    disk_size: int,
    timeout: int,
    console_log: Path | None,
    quiet: bool,
    verbose: bool,
) -> NoReturn:
    """Provision a VM from an installer ISO over its serial console.

    Boots the ISO in QEMU, logs in as root, runs the build inside the VM
    and copies its output to the output directory.

    Examples:

    \b
      vmprov                                  # Default script, ./ shared
      vmprov --build-version 20240101.0       # Versioned build
      vmprov --iso manjaro.iso -t 60          # Local ISO, slower console
      vmprov --script steps.json --console-log console.txt
    """
    configure_logging(level=logging.DEBUG if verbose else logging.INFO, quiet=quiet)

    try:
        config = ProvisionConfig(
            source_dir=source_dir.resolve(),
            output_dir=output_dir.resolve() if output_dir else None,
            iso_path=iso_path.resolve() if iso_path else None,
            build_version=build_version,
            cpu_count=cpus,
            memory_mb=memory,
            scratch_disk_mb=disk_size,
            default_timeout_seconds=timeout,
            console_log=console_log,
        )
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    try:
        exit_code = asyncio.run(run_provision(config, script_path, quiet))
    except KeyboardInterrupt:
        click.echo(format_error("Interrupted", "Provisioning was cancelled; the VM has been shut down."), err=True)
        exit_code = EXIT_INTERRUPTED

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
