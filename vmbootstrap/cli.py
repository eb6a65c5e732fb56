"""CLI interface for the bootstrap tool."""
import enum
import os
import signal
from pathlib import Path
from typing import NoReturn, Optional

import typer

from . import utils
from . import steps
from .collect import collect_decisions
from .config import PAYLOAD_ENV, BootstrapContext, DecisionSet, Paths
from .elevate import elevate_and_apply


class Phase(str, enum.Enum):
    interactive = "interactive"
    apply = "apply"


def load_decisions(dry_run: bool, force: bool, force_rerun: bool) -> DecisionSet:
    """Decisions handed over by the interactive phase, or built from BOOT_* variables."""
    payload = os.environ.get(PAYLOAD_ENV)
    if payload:
        decisions = DecisionSet.from_payload(payload)
    else:
        decisions = DecisionSet.from_environ(
            os.environ, dry_run=dry_run, force=force, force_rerun=force_rerun
        )
    decisions.validate()
    return decisions


def terminate(signum, frame):
    """SIGTERM handler: unwind through the normal fatal-error path."""
    raise utils.Terminated(f"Terminated by signal {signum}")


def fail(message: str, code: int, logfile: Optional[Path]) -> NoReturn:
    """Report a fatal error with its exit code and where to find the log, then exit."""
    utils.log_error(message)
    utils.log_error(f"Script terminated with error (code: {code})")
    if logfile and logfile.exists():
        utils.log_error(f"Check log file: {logfile}")
    raise typer.Exit(code)


def setup(
    dry_run: bool = typer.Option(False, "--dry-run", envvar="DRY_RUN",
                                 help="Preview changes without applying them"),
    force: bool = typer.Option(False, "--force", envvar="FORCE",
                               help="Skip confirmations, answering every prompt with its default"),
    force_rerun: bool = typer.Option(False, "--force-rerun", envvar="FORCE_RERUN",
                                     help="Run again even if this machine was already bootstrapped"),
    phase: Phase = typer.Option(Phase.interactive, "--phase", envvar="BOOTSTRAP_PHASE",
                                hidden=True, case_sensitive=False),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show output of external commands"),
):
    """Turn a freshly cloned VM into a unique, network-configured host."""
    paths = Paths()
    logfile = None
    previous_term = signal.signal(signal.SIGTERM, terminate)
    try:
        if phase is Phase.apply:
            decisions = load_decisions(dry_run, force, force_rerun)
        else:
            decisions = collect_decisions(
                paths,
                dry_run=dry_run,
                force=force,
                force_rerun=force_rerun,
                timestamp=os.environ.get("BOOT_TIMESTAMP"),
                logfile=os.environ.get("BOOT_LOGFILE"),
            )
        logfile = Path(decisions.logfile) if decisions.logfile else None

        def apply(confirmed: DecisionSet) -> None:
            steps.apply_phase(BootstrapContext(confirmed, paths=paths), verbose=verbose)

        if phase is Phase.apply:
            apply(decisions)
        else:
            elevate_and_apply(decisions, apply, verbose=verbose)
    except utils.FatalError as e:
        fail(str(e), e.exit_code, logfile)
    except KeyboardInterrupt:
        fail("Interrupted", 130, logfile)
    except (typer.Abort, typer.Exit):
        raise
    except Exception as e:
        utils.logger.debug("Unhandled error", exc_info=True)
        fail(f"Unexpected error: {e}", 1, logfile)
    finally:
        signal.signal(signal.SIGTERM, previous_term)


app = typer.Typer(
    name="bootstrap-vm",
    help="Provisioning tool for freshly cloned Ubuntu VMs.",
    add_completion=False,
    invoke_without_command=True,
    callback=setup,
)


if __name__ == "__main__":
    app()
