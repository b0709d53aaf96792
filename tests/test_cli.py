"""Tests for the vmprov command line.

Provisioner is replaced with a mock; these tests cover argument handling
and the mapping from exceptions to exit codes.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from vm_provisioner import __version__
from vm_provisioner.cli import (
    EXIT_CLI_ERROR,
    EXIT_INTERRUPTED,
    EXIT_PROVISION_ERROR,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    format_error,
    main,
)
from vm_provisioner.exceptions import (
    ArtifactCopyError,
    ExpectTimeoutError,
    GuestShutdownError,
    LaunchError,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def provisioner() -> Iterator[MagicMock]:
    """Patched Provisioner class; ``.return_value.run`` is the AsyncMock to configure."""
    with (
        patch("vm_provisioner.cli.Provisioner") as cls,
        patch("vm_provisioner.cli.configure_logging"),
    ):
        result = MagicMock()
        result.duration_seconds = 1.5
        result.artifact.files = ("box.img",)
        cls.return_value.run = AsyncMock(return_value=result)
        yield cls


# ============================================================================
# Options
# ============================================================================


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_help(runner: CliRunner) -> None:
    result = runner.invoke(main, ["-h"])
    assert result.exit_code == 0
    assert "--build-version" in result.output


def test_success(runner: CliRunner, provisioner: MagicMock, tmp_path: Path) -> None:
    result = runner.invoke(
        main,
        ["-s", str(tmp_path), "--build-version", "20240101.0", "--cpus", "2", "-m", "4096", "-t", "45"],
    )

    assert result.exit_code == EXIT_SUCCESS, result.output
    config = provisioner.call_args.args[0]
    assert config.source_dir == tmp_path.resolve()
    assert config.build_version == "20240101.0"
    assert config.cpu_count == 2
    assert config.memory_mb == 4096
    assert config.default_timeout_seconds == 45
    provisioner.return_value.run.assert_awaited_once_with(None)


def test_invalid_memory_is_usage_error(runner: CliRunner, provisioner: MagicMock, tmp_path: Path) -> None:
    result = runner.invoke(main, ["-s", str(tmp_path), "--memory", "10"])
    assert result.exit_code == EXIT_CLI_ERROR
    provisioner.assert_not_called()


def test_missing_source_dir(runner: CliRunner, provisioner: MagicMock, tmp_path: Path) -> None:
    result = runner.invoke(main, ["-s", str(tmp_path / "missing")])
    assert result.exit_code == EXIT_CLI_ERROR


# ============================================================================
# Scripts
# ============================================================================


def test_custom_script_passed_through(runner: CliRunner, provisioner: MagicMock, tmp_path: Path) -> None:
    script = tmp_path / "steps.json"
    script.write_text('[{"await": "login:"}, {"send": "root\\n", "await": "# ", "timeoutSeconds": 5}]')

    result = runner.invoke(main, ["-s", str(tmp_path), "--script", str(script)])

    assert result.exit_code == EXIT_SUCCESS, result.output
    steps = provisioner.return_value.run.call_args.args[0]
    assert [s.expect for s in steps] == ["login:", "# "]
    assert steps[1].timeout_seconds == 5


def test_invalid_script_json(runner: CliRunner, provisioner: MagicMock, tmp_path: Path) -> None:
    script = tmp_path / "steps.json"
    script.write_text('{"send": "not a list"')

    result = runner.invoke(main, ["-s", str(tmp_path), "--script", str(script)])

    assert result.exit_code == EXIT_CLI_ERROR
    assert "Invalid command script" in result.output
    provisioner.return_value.run.assert_not_awaited()


# ============================================================================
# Exit codes
# ============================================================================


@pytest.mark.parametrize(
    ("error", "exit_code", "title"),
    [
        (ExpectTimeoutError("No console output for 30s while awaiting '# '"), EXIT_TIMEOUT, "timed out"),
        (LaunchError("QEMU exited during startup"), EXIT_PROVISION_ERROR, "could not be launched"),
        (GuestShutdownError("VM powered off", returncode=0), EXIT_PROVISION_ERROR, "powered off"),
        (ArtifactCopyError("Build output not found"), EXIT_PROVISION_ERROR, "Provisioning failed"),
    ],
)
def test_error_exit_codes(
    runner: CliRunner,
    provisioner: MagicMock,
    tmp_path: Path,
    error: Exception,
    exit_code: int,
    title: str,
) -> None:
    provisioner.return_value.run.side_effect = error

    result = runner.invoke(main, ["-s", str(tmp_path)])

    assert result.exit_code == exit_code
    assert title in result.output


def test_keyboard_interrupt(runner: CliRunner, provisioner: MagicMock, tmp_path: Path) -> None:
    provisioner.return_value.run.side_effect = KeyboardInterrupt

    result = runner.invoke(main, ["-s", str(tmp_path)])

    assert result.exit_code == EXIT_INTERRUPTED
    assert "Interrupted" in result.output


def test_format_error() -> None:
    text = format_error("Title", "Something broke", ["Try this", "Or that"])
    assert "Error: Title" in text
    assert "Something broke" in text
    assert "• Try this" in text
    assert "• Or that" in text
