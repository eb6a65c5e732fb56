"""Shared fixtures."""
import logging

import pytest
from unittest.mock import MagicMock

from vmbootstrap.config import BootstrapContext, DecisionSet, Paths
from vmbootstrap.utils import Runner, logger


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers added by setup_logging so tests don't leak open log files."""
    yield
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def paths(tmp_path):
    """System locations re-based under a temporary directory."""
    return Paths.rooted(tmp_path)


@pytest.fixture
def runner():
    """A runner that records commands instead of executing them."""
    mock = MagicMock(spec=Runner)
    mock.dry_run = False
    mock.run.return_value = True
    return mock


@pytest.fixture
def make_context(paths, runner):
    """Build a BootstrapContext; use_mock_runner=False gives it a real Runner."""
    def _make(use_mock_runner=True, **decisions):
        decisions.setdefault("timestamp", "20250101-120000")
        return BootstrapContext(
            DecisionSet(**decisions),
            paths=paths,
            runner=runner if use_mock_runner else None,
        )
    return _make
