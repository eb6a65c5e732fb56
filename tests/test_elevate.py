"""Tests for privilege elevation."""
import os
import sys

import pytest
from unittest.mock import MagicMock, patch

from vmbootstrap.config import DecisionSet
from vmbootstrap.elevate import PACKAGE_ROOT, apply_command, elevate_and_apply
from vmbootstrap.utils import FatalError

DECISIONS = DecisionSet(new_hostname="web-01", expand_disk=True, timestamp="20250101-120000")


class TestApplyCommand:
    """Tests for the re-exec command line."""

    def test_command_carries_payload(self):
        argv = apply_command(DECISIONS)

        assert argv[:3] == ["sudo", "env", "BOOTSTRAP_PHASE=apply"]
        assert argv[-3:] == [sys.executable, "-m", "vmbootstrap.cli"]
        assert "--verbose" not in argv
        key, _, payload = argv[3].partition("=")
        assert key == "BOOTSTRAP_DECISIONS"
        assert DecisionSet.from_payload(payload) == DECISIONS

    def test_verbose_is_forwarded(self):
        argv = apply_command(DECISIONS, verbose=True)

        assert argv[-4:] == [sys.executable, "-m", "vmbootstrap.cli", "--verbose"]

    @patch.dict(os.environ, {}, clear=True)
    def test_package_location_is_importable_as_root(self):
        """sudo drops the per-user site directory, so the package root travels on PYTHONPATH."""
        argv = apply_command(DECISIONS)

        assert f"PYTHONPATH={PACKAGE_ROOT}" in argv
        assert (PACKAGE_ROOT / "vmbootstrap" / "cli.py").is_file()

    @patch.dict(os.environ, {"PYTHONPATH": "/opt/extra"})
    def test_existing_pythonpath_is_kept(self):
        argv = apply_command(DECISIONS)

        assert f"PYTHONPATH={PACKAGE_ROOT}{os.pathsep}/opt/extra" in argv


class TestElevateAndApply:
    """Tests for choosing between in-process apply and sudo."""

    @patch('vmbootstrap.elevate.os.execvp')
    @patch('vmbootstrap.elevate.is_root', return_value=True)
    def test_root_applies_in_process(self, mock_is_root, mock_execvp):
        apply = MagicMock()

        elevate_and_apply(DECISIONS, apply)

        apply.assert_called_once_with(DECISIONS)
        mock_execvp.assert_not_called()

    @patch('vmbootstrap.elevate.os.execvp')
    @patch('vmbootstrap.elevate.command_exists', return_value=True)
    @patch('vmbootstrap.elevate.is_root', return_value=False)
    def test_non_root_execs_sudo(self, mock_is_root, mock_exists, mock_execvp):
        apply = MagicMock()

        elevate_and_apply(DECISIONS, apply)

        apply.assert_not_called()
        argv = apply_command(DECISIONS)
        mock_execvp.assert_called_once_with("sudo", argv)

    @patch('vmbootstrap.elevate.os.execvp')
    @patch('vmbootstrap.elevate.command_exists', return_value=True)
    @patch('vmbootstrap.elevate.is_root', return_value=False)
    def test_verbose_survives_sudo(self, mock_is_root, mock_exists, mock_execvp):
        elevate_and_apply(DECISIONS, MagicMock(), verbose=True)

        assert mock_execvp.call_args.args[1][-1] == "--verbose"

    @patch('vmbootstrap.elevate.os.execvp')
    @patch('vmbootstrap.elevate.command_exists', return_value=False)
    @patch('vmbootstrap.elevate.is_root', return_value=False)
    def test_missing_sudo_is_fatal(self, mock_is_root, mock_exists, mock_execvp):
        with pytest.raises(FatalError, match="sudo is not available"):
            elevate_and_apply(DECISIONS, MagicMock())

        mock_execvp.assert_not_called()
