"""Generic-identity cleanup run before a clone is considered unique."""
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from vmbootstrap.config import BootstrapContext
from vmbootstrap.utils import log_info, log_step, log_success, log_warn

LOGIN_RECORDS = ("wtmp", "btmp", "lastlog")


def program_paths() -> List[Path]:
    """Canonical locations of the running program: the entry script and this package."""
    paths = [Path(__file__).resolve().parent]
    if sys.argv and sys.argv[0]:
        paths.append(Path(sys.argv[0]).resolve())
    return paths


def running_from_temp(paths: Iterable[Path], tmp_dirs: Sequence[Path]) -> Optional[Path]:
    """Return the first of ``paths`` that lives under one of ``tmp_dirs``."""
    for path in paths:
        for tmp_dir in tmp_dirs:
            if path == tmp_dir or tmp_dir in path.parents:
                return path
    return None


def clear_shell_history(ctx: BootstrapContext) -> None:
    """Remove .bash_history for root and every /home user."""
    log_info("Clearing shell history...")
    for home in ctx.paths.user_homes():
        ctx.runner.remove(home / ".bash_history")


def clear_login_records(ctx: BootstrapContext) -> None:
    """Empty wtmp, btmp and lastlog."""
    # Truncated, not removed: wtmp/btmp writers keep their file open
    log_info("Clearing login records...")
    for name in LOGIN_RECORDS:
        ctx.runner.truncate(ctx.paths.log_dir / name)


def clear_temp_files(ctx: BootstrapContext) -> None:
    """Empty the temporary directories."""
    log_info("Clearing temporary files...")
    for tmp_dir in ctx.paths.tmp_dirs:
        if not tmp_dir.is_dir():
            continue
        for entry in sorted(tmp_dir.iterdir()):
            ctx.runner.remove(entry)


def clear_apt_cache(ctx: BootstrapContext) -> None:
    """Drop downloaded packages and package lists."""
    log_info("Clearing apt cache...")
    ctx.runner.run("apt-get", "clean")
    if ctx.paths.apt_lists.is_dir():
        for entry in sorted(ctx.paths.apt_lists.iterdir()):
            ctx.runner.remove(entry)


def is_rotated_log(path: Path) -> bool:
    """Compressed (``.gz``) or numbered (``.1``) leftovers of log rotation."""
    return path.suffix == ".gz" or (len(path.suffix) == 2 and path.suffix[1].isdigit())


def rotate_logs(ctx: BootstrapContext) -> None:
    """Truncate current logs and delete rotated ones."""
    log_info("Truncating old logs...")
    if not ctx.paths.log_dir.is_dir():
        return
    for path in sorted(ctx.paths.log_dir.rglob("*")):
        if not path.is_file() or path.is_symlink():
            continue
        if path.suffix == ".log" and path != ctx.logfile:
            ctx.runner.truncate(path)
        elif is_rotated_log(path):
            ctx.runner.remove(path)


def reset_failed_logins(ctx: BootstrapContext) -> None:
    """Reset failed-login counters."""
    ctx.runner.run("pam_tally2", "--reset")
    ctx.runner.run("faillock", "--reset")


def clean_system_state(ctx: BootstrapContext, program: Optional[Iterable[Path]] = None) -> None:
    """Strip history, login records, temp files, caches, old logs and the random seed."""
    log_step("Cleaning system state (sysprep)")

    in_temp = running_from_temp(program if program is not None else program_paths(),
                                ctx.paths.tmp_dirs)
    if in_temp:
        log_warn(f"Script is running from temporary directory: {in_temp}")
        log_warn("Skipping /tmp cleanup to avoid self-deletion")
        log_info("Recommendation: install the tool outside /tmp, e.g. with pip into /usr/local")

    clear_shell_history(ctx)
    clear_login_records(ctx)
    if in_temp:
        log_info("Skipping temporary file cleanup (script running from temp directory)")
    else:
        clear_temp_files(ctx)
    clear_apt_cache(ctx)
    rotate_logs(ctx)
    reset_failed_logins(ctx)

    # A fresh seed is generated on next boot, so clones stop sharing one
    ctx.runner.remove(ctx.paths.random_seed)

    log_success("System state cleaned")
