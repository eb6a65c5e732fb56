"""Utility functions for the bootstrap tool."""
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Optional, Union

import sh

logger = logging.getLogger("vmbootstrap")
logger.addHandler(logging.NullHandler())

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(message)s"
LOG_DATEFMT = "%H:%M:%S"


class FatalError(RuntimeError):
    """Raised when the run must stop with a non-zero exit."""
    exit_code = 1


class Terminated(FatalError):
    """Raised from the SIGTERM handler."""
    exit_code = 143


def die(message: str) -> None:
    """Abort the run."""
    raise FatalError(message)


def command_exists(command: str) -> bool:
    """Check if a command exists in the system PATH."""
    return shutil.which(command) is not None


def is_root() -> bool:
    """Check if the script is running as root."""
    return os.geteuid() == 0


def log_info(message: str) -> None:
    """Log an informational message."""
    print(f"[INFO] {message}")
    logger.info(message)


def log_action(message: str) -> None:
    """Log an action being performed."""
    print(f"  -> {message}")
    logger.info(message)


def log_step(message: str) -> None:
    """Log the start of an apply step."""
    print(f"\n==> {message}")
    logger.info("==> %s", message)


def log_success(message: str) -> None:
    """Log a completed step."""
    print(f"[OK] {message}")
    logger.info(message)


def log_warn(message: str) -> None:
    """Log a warning; the run continues."""
    print(f"[WARN] {message}", file=sys.stderr)
    logger.warning(message)


def log_error(message: str) -> None:
    """Log an error."""
    print(f"[ERROR] {message}", file=sys.stderr)
    logger.error(message)


def setup_logging(verbose: bool = False, logfile: Optional[Union[str, Path]] = None) -> None:
    """Setup logging configuration.

    The terminal always gets the plain ``[INFO]``-style lines printed by the
    helpers above. ``logfile`` adds a file transcript of everything, including
    the output of every external command. ``verbose`` echoes that command
    output on the terminal too.
    """
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATEFMT)

    if logfile:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logfile)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if verbose:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter("     %(message)s"))
        # Only command output; everything else is already printed
        console.addFilter(lambda record: record.levelno == logging.DEBUG)
        logger.addHandler(console)


def capture(command: str, *args: str) -> str:
    """Run a read-only probe and return its stripped output, or '' on any failure."""
    try:
        return str(sh.Command(command)(*args)).strip()
    except (sh.CommandNotFound, sh.ErrorReturnCode):
        return ""


def _log_output(line: str) -> None:
    """Record one line of command output."""
    logger.debug(line.rstrip())


class Runner:
    """Executes mutating commands and file operations, or previews them in dry-run."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def run(self, command: str, *args: str, warn: Optional[str] = None,
            note: Optional[str] = None) -> bool:
        """Run ``command`` and report whether it succeeded.

        A failure is reported with ``warn`` as a warning, or with ``note`` as
        plain information when failing is an expected no-op.
        """
        cmdline = " ".join((command,) + args)
        if self.dry_run:
            log_action(f"[DRY RUN] Would run: {cmdline}")
            return True

        logger.debug("$ %s", cmdline)
        try:
            sh.Command(command)(*args, _out=_log_output, _err=_log_output)
            return True
        except sh.CommandNotFound:
            failure = f"{command} not found"
        except sh.ErrorReturnCode as e:
            failure = f"{cmdline} exited with {e.exit_code}"

        logger.debug(failure)
        if warn:
            log_warn(warn)
        elif note:
            log_info(note)
        return False

    def remove(self, path: Union[str, Path]) -> bool:
        """Remove a file, symlink or directory tree. A missing path is not an error."""
        path = Path(path)
        if self.dry_run:
            log_action(f"[DRY RUN] Would remove {path}")
            return True
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
            return True
        except OSError as e:
            log_warn(f"Could not remove {path}: {e}")
            return False

    def truncate(self, path: Union[str, Path]) -> bool:
        """Empty a file in place, keeping its inode. A missing file is skipped."""
        path = Path(path)
        if self.dry_run:
            log_action(f"[DRY RUN] Would truncate {path}")
            return True
        if not path.exists():
            return True
        try:
            os.truncate(path, 0)
            return True
        except OSError as e:
            log_warn(f"Could not truncate {path}: {e}")
            return False

    def write_text(self, path: Union[str, Path], content: str,
                   mode: Optional[int] = None, errors: Optional[str] = None) -> bool:
        """Write ``content`` to ``path``, optionally setting its mode."""
        path = Path(path)
        if self.dry_run:
            log_action(f"[DRY RUN] Would write {path}")
            return True
        try:
            path.write_text(content, errors=errors)
            if mode is not None:
                path.chmod(mode)
            return True
        except OSError as e:
            log_warn(f"Could not write {path}: {e}")
            return False

    def symlink(self, target: Union[str, Path], link: Union[str, Path]) -> bool:
        """Point ``link`` at ``target``, replacing whatever was there."""
        link = Path(link)
        if self.dry_run:
            log_action(f"[DRY RUN] Would link {link} -> {target}")
            return True
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target)
            return True
        except OSError as e:
            log_warn(f"Could not link {link} -> {target}: {e}")
            return False
