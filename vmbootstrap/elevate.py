"""Hand-off from the interactive phase to the root-only apply phase."""
import os
import sys
from pathlib import Path
from typing import Callable, List

from vmbootstrap.config import PAYLOAD_ENV, PHASE_ENV, DecisionSet
from vmbootstrap.utils import command_exists, die, is_root, log_info

# Directory holding the vmbootstrap package; for a --user install also its dependencies
PACKAGE_ROOT = Path(__file__).resolve().parent.parent


def import_path() -> str:
    """PYTHONPATH for root's interpreter: this package's root plus the caller's own path."""
    entries = [str(PACKAGE_ROOT)]
    if os.environ.get("PYTHONPATH"):
        entries.append(os.environ["PYTHONPATH"])
    return os.pathsep.join(entries)


def apply_command(decisions: DecisionSet, verbose: bool = False) -> List[str]:
    """argv that re-runs this program as root straight into the apply phase.

    ``env`` after ``sudo`` sets the variables inside sudo's reset environment.
    sudo also resets HOME, which hides a ``pip install --user`` site directory
    from root, so the package location is passed explicitly on PYTHONPATH.
    """
    argv = [
        "sudo",
        "env",
        f"{PHASE_ENV}=apply",
        f"{PAYLOAD_ENV}={decisions.to_payload()}",
        f"PYTHONPATH={import_path()}",
        sys.executable,
        "-m",
        "vmbootstrap.cli",
    ]
    if verbose:
        argv.append("--verbose")
    return argv


def elevate_and_apply(decisions: DecisionSet, apply: Callable[[DecisionSet], None],
                      verbose: bool = False) -> None:
    """Run ``apply`` in-process when already root, otherwise replace this process via sudo."""
    if is_root():
        apply(decisions)
        return

    if not command_exists("sudo"):
        die("Root privileges are required and sudo is not available")

    log_info("Elevating to root...")
    sys.stdout.flush()
    sys.stderr.flush()
    argv = apply_command(decisions, verbose=verbose)
    os.execvp(argv[0], argv)
