"""Bootstrap completion marker and the re-run guard built on it."""
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict

from vmbootstrap.utils import FatalError, die, log_warn

UNKNOWN = "unknown"
MARKER_FIELDS = ("DATE", "HOSTNAME", "SCRIPT_VERSION", "IP", "LOGFILE")


def read_marker(path: Path) -> Dict[str, str]:
    """Parse the marker. Missing or unreadable fields come back as 'unknown'."""
    record = {key: UNKNOWN for key in MARKER_FIELDS}
    try:
        content = path.read_text(errors="replace")
    except OSError:
        return record

    for line in content.splitlines():
        if line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key in record and value.strip():
            record[key] = value.strip()
    return record


def render_marker(hostname: str, version: str, ip: str, logfile: str) -> str:
    """Render the marker content for a completed run."""
    lines = [
        "# Bootstrap completion marker",
        f"DATE={datetime.now().astimezone().isoformat(timespec='seconds')}",
        f"HOSTNAME={hostname}",
        f"SCRIPT_VERSION={version}",
        f"IP={ip}",
        f"LOGFILE={logfile}",
    ]
    return "\n".join(lines) + "\n"


def write_marker(path: Path, content: str) -> None:
    """Write the marker. Failing here fails the run: it is the record of success."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        path.chmod(0o644)
    except OSError as e:
        raise FatalError(f"Could not write bootstrap marker {path}: {e}") from e


def check_previous_run(path: Path, force_rerun: bool,
                       confirm: Callable[[str, bool], bool]) -> None:
    """Block a second run on the same machine unless the operator overrides it.

    ``confirm(prompt, default)`` asks the operator a yes/no question.
    """
    if not path.exists():
        return

    previous = read_marker(path)
    print()
    print("  WARNING: Bootstrap was already run on this machine")
    print(f"     Previous run: {previous['DATE']}")
    print(f"     Hostname was: {previous['HOSTNAME']}")
    print()
    print("  Running again may cause issues (new SSH keys, new machine-id, etc.)")
    print()

    if force_rerun:
        log_warn("FORCE_RERUN=yes specified, continuing anyway...")
        return

    if not confirm("Are you sure you want to run bootstrap again?", False):
        die("Aborted. Use FORCE_RERUN=yes to skip this check.")
