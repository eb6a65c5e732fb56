"""Tests for the CLI interface."""
import os
import signal

from typer.testing import CliRunner
from unittest.mock import patch

from vmbootstrap.cli import app
from vmbootstrap.config import BootstrapContext, DecisionSet
from vmbootstrap.utils import FatalError

runner = CliRunner()

# Keep the caller's environment out of the option defaults
CLEAN_ENV = {
    "BOOTSTRAP_PHASE": None,
    "BOOTSTRAP_DECISIONS": None,
    "DRY_RUN": None,
    "FORCE": None,
    "FORCE_RERUN": None,
    "BOOT_NEW_HOSTNAME": None,
    "BOOT_EXPAND_DISK": None,
    "BOOT_TIMESTAMP": None,
    "BOOT_LOGFILE": None,
}

DECISIONS = DecisionSet(new_hostname="web-01", expand_disk=True, timestamp="20250101-120000",
                        logfile="/nonexistent/bootstrap-20250101-120000.log")


def invoke(args=(), **env):
    return runner.invoke(app, list(args), env={**CLEAN_ENV, **env})


def test_cli_help():
    """Test CLI help command."""
    result = invoke(["--help"])
    assert result.exit_code == 0
    assert "provisioning tool" in result.stdout.lower()
    assert "--dry-run" in result.stdout
    assert "--force-rerun" in result.stdout
    assert "--phase" not in result.stdout


@patch('vmbootstrap.steps.apply_phase')
def test_apply_phase_from_payload(mock_apply):
    """The apply phase runs the decisions handed over in the payload."""
    result = invoke(["--phase", "apply"], BOOTSTRAP_DECISIONS=DECISIONS.to_payload())

    assert result.exit_code == 0
    mock_apply.assert_called_once()
    ctx = mock_apply.call_args.args[0]
    assert isinstance(ctx, BootstrapContext)
    assert ctx.decisions == DECISIONS
    assert mock_apply.call_args.kwargs == {"verbose": False}


@patch('vmbootstrap.steps.apply_phase')
def test_apply_phase_from_legacy_variables(mock_apply):
    """Without a payload the BOOT_* variables are read, the phase coming from the environment."""
    result = invoke(BOOTSTRAP_PHASE="apply", BOOT_NEW_HOSTNAME="web-01",
                    BOOT_EXPAND_DISK="yes", DRY_RUN="1")

    assert result.exit_code == 0
    decisions = mock_apply.call_args.args[0].decisions
    assert decisions.new_hostname == "web-01"
    assert decisions.expand_disk is True
    assert decisions.dry_run is True
    assert decisions.change_ip is False


@patch('vmbootstrap.steps.apply_phase')
def test_apply_phase_rejects_malformed_payload(mock_apply):
    result = invoke(["--phase", "apply"], BOOTSTRAP_DECISIONS="{not json")

    assert result.exit_code == 1
    assert "Malformed decision payload" in result.output
    mock_apply.assert_not_called()


@patch('vmbootstrap.steps.apply_phase')
def test_apply_phase_validates_decisions(mock_apply):
    result = invoke(["--phase", "apply"], BOOT_NEW_HOSTNAME="-bad-")

    assert result.exit_code == 1
    assert "Invalid hostname format: -bad-" in result.output
    mock_apply.assert_not_called()


@patch('vmbootstrap.steps.apply_phase')
def test_fatal_error_exits_with_code_1(mock_apply):
    mock_apply.side_effect = FatalError("Network configuration invalid and was rolled back")

    result = invoke(["--phase", "apply"], BOOTSTRAP_DECISIONS=DECISIONS.to_payload())

    assert result.exit_code == 1
    assert "[ERROR] Network configuration invalid and was rolled back" in result.output
    assert "Script terminated with error (code: 1)" in result.output
    assert "Check log file" not in result.output


@patch('vmbootstrap.cli.elevate_and_apply')
@patch('vmbootstrap.cli.collect_decisions')
def test_interactive_phase(mock_collect, mock_elevate):
    """The interactive phase collects decisions and hands them to the elevation step."""
    mock_collect.return_value = DECISIONS

    result = invoke(["--dry-run", "--force"])

    assert result.exit_code == 0
    kwargs = mock_collect.call_args.kwargs
    assert kwargs["dry_run"] is True
    assert kwargs["force"] is True
    assert kwargs["force_rerun"] is False
    assert kwargs["timestamp"] is None
    mock_elevate.assert_called_once()
    assert mock_elevate.call_args.args[0] == DECISIONS


@patch('vmbootstrap.steps.apply_phase')
@patch('vmbootstrap.cli.elevate_and_apply')
@patch('vmbootstrap.cli.collect_decisions')
def test_interactive_phase_applies_in_process_as_root(mock_collect, mock_elevate, mock_apply):
    mock_collect.return_value = DECISIONS
    mock_elevate.side_effect = lambda decisions, apply, verbose: apply(decisions)

    result = invoke(["--verbose"])

    assert result.exit_code == 0
    assert mock_apply.call_args.args[0].decisions == DECISIONS
    assert mock_apply.call_args.kwargs == {"verbose": True}


@patch('vmbootstrap.cli.elevate_and_apply')
@patch('vmbootstrap.cli.collect_decisions')
def test_declined_rerun_stops_before_elevation(mock_collect, mock_elevate):
    mock_collect.side_effect = FatalError("Aborted. Use FORCE_RERUN=yes to skip this check.")

    result = invoke()

    assert result.exit_code == 1
    assert "FORCE_RERUN=yes" in result.output
    assert "Check log file" not in result.output
    mock_elevate.assert_not_called()


@patch('vmbootstrap.cli.elevate_and_apply')
@patch('vmbootstrap.cli.collect_decisions')
def test_environment_timestamp_is_passed_through(mock_collect, mock_elevate):
    mock_collect.return_value = DECISIONS

    invoke(BOOT_TIMESTAMP="20250101-120000", BOOT_LOGFILE="/tmp/boot.log", FORCE_RERUN="yes")

    kwargs = mock_collect.call_args.kwargs
    assert kwargs["timestamp"] == "20250101-120000"
    assert kwargs["logfile"] == "/tmp/boot.log"
    assert kwargs["force_rerun"] is True


@patch('vmbootstrap.cli.collect_decisions')
def test_interrupt_exits_with_130(mock_collect):
    mock_collect.side_effect = KeyboardInterrupt

    result = invoke()

    assert result.exit_code == 130


@patch('vmbootstrap.cli.elevate_and_apply')
@patch('vmbootstrap.cli.collect_decisions')
def test_verbose_is_handed_to_elevation(mock_collect, mock_elevate):
    mock_collect.return_value = DECISIONS

    result = invoke(["--verbose"])

    assert result.exit_code == 0
    assert mock_elevate.call_args.kwargs == {"verbose": True}


@patch('vmbootstrap.steps.apply_phase')
def test_unexpected_error_exits_with_code_1(mock_apply):
    """Errors outside FatalError still produce the error report instead of a traceback."""
    mock_apply.side_effect = ValueError("boom")

    result = invoke(["--phase", "apply"], BOOTSTRAP_DECISIONS=DECISIONS.to_payload())

    assert result.exit_code == 1
    assert "Unexpected error: boom" in result.output
    assert "Script terminated with error (code: 1)" in result.output
    assert not isinstance(result.exception, ValueError)


@patch('vmbootstrap.steps.apply_phase')
def test_unexpected_error_points_at_log_file(mock_apply, tmp_path):
    logfile = tmp_path / "bootstrap.log"
    logfile.write_text("")
    decisions = DecisionSet(timestamp="20250101-120000", logfile=str(logfile))
    mock_apply.side_effect = ValueError("boom")

    result = invoke(["--phase", "apply"], BOOTSTRAP_DECISIONS=decisions.to_payload())

    assert result.exit_code == 1
    assert f"Check log file: {logfile}" in result.output


@patch('vmbootstrap.steps.apply_phase')
def test_sigterm_exits_with_143(mock_apply):
    mock_apply.side_effect = lambda ctx, verbose: os.kill(os.getpid(), signal.SIGTERM)

    result = invoke(["--phase", "apply"], BOOTSTRAP_DECISIONS=DECISIONS.to_payload())

    assert result.exit_code == 143
    assert "Terminated by signal" in result.output
    assert "Script terminated with error (code: 143)" in result.output


@patch('vmbootstrap.steps.apply_phase')
def test_sigterm_handler_is_restored(mock_apply):
    before = signal.getsignal(signal.SIGTERM)

    invoke(["--phase", "apply"], BOOTSTRAP_DECISIONS=DECISIONS.to_payload())

    assert signal.getsignal(signal.SIGTERM) is before
