"""Completion report shown at the end of the apply phase."""
import shutil
import socket
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Tuple

from vmbootstrap.config import SCRIPT_VERSION, BootstrapContext
from vmbootstrap.detect import detect_current_dns, detect_current_gateway, detect_primary_ip
from vmbootstrap.utils import log_action, log_warn, logger

NOT_AVAILABLE = "N/A"
RULE = "=" * 40


def human_size(num_bytes: float) -> str:
    """Format a byte count with a binary unit suffix."""
    for unit in ("B", "K", "M", "G", "T"):
        if abs(num_bytes) < 1024 or unit == "T":
            return f"{num_bytes:.0f}{unit}" if unit == "B" else f"{num_bytes:.1f}{unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f}T"


def root_fs_usage(mountpoint: str = "/") -> str:
    """Total, free and used share of the filesystem at ``mountpoint``."""
    try:
        usage = shutil.disk_usage(mountpoint)
    except OSError:
        return ""
    percent = usage.used / usage.total * 100 if usage.total else 0
    return f"{human_size(usage.total)} total, {human_size(usage.free)} free ({percent:.0f}% used)"


def memory_info(meminfo: Path) -> str:
    """Total and available memory from /proc/meminfo."""
    values: Dict[str, int] = {}
    try:
        for line in meminfo.read_text().splitlines():
            key, _, rest = line.partition(":")
            fields = rest.split()
            if fields and fields[0].isdigit():
                values[key] = int(fields[0]) * 1024
    except OSError:
        return ""
    if "MemTotal" not in values:
        return ""
    available = values.get("MemAvailable", values.get("MemFree", 0))
    return f"{human_size(values['MemTotal'])} total, {human_size(available)} available"


def count_ssh_host_keys(ssh_dir: Path) -> int:
    """Number of private SSH host keys in ``ssh_dir``."""
    try:
        return len(list(ssh_dir.glob("ssh_host_*_key")))
    except OSError:
        return 0


def read_machine_id(path: Path) -> str:
    """Content of the machine-id file, or an empty string."""
    try:
        return path.read_text().strip()
    except OSError:
        return ""


def gather_report(ctx: BootstrapContext) -> List[Tuple[str, str]]:
    """Collect the facts for the report as (label, value) rows; '' rows are spacers."""
    paths = ctx.paths
    dns = detect_current_dns(resolv_conf=paths.resolv_conf).split(",")[0]
    return [
        ("Date", datetime.now().astimezone().strftime("%a %b %d %H:%M:%S %Z %Y")),
        ("Hostname", socket.gethostname()),
        ("IP Address", detect_primary_ip()),
        ("Gateway", detect_current_gateway()),
        ("DNS", dns),
        ("", ""),
        ("Root FS", root_fs_usage()),
        ("Memory", memory_info(paths.meminfo)),
        ("", ""),
        ("SSH Keys", f"{count_ssh_host_keys(paths.ssh_dir)} host keys regenerated"),
        ("Machine ID", read_machine_id(paths.machine_id)),
        ("", ""),
        ("Script Ver", SCRIPT_VERSION),
        ("Log file", str(ctx.logfile)),
        ("Report", str(paths.report_file(ctx.decisions.timestamp))),
        ("Marker", str(paths.marker)),
    ]


def render_report(rows: List[Tuple[str, str]]) -> str:
    """Lay out report rows under a heading."""
    lines = [RULE, "   Bootstrap Completion Report", RULE, ""]
    for label, value in rows:
        if not label:
            lines.append("")
            continue
        lines.append(f"{label + ':':<14}{value or NOT_AVAILABLE}")
    lines.extend(["", RULE])
    return "\n".join(lines) + "\n"


def write_report(ctx: BootstrapContext) -> str:
    """Print the report and save it to the report file, unless this is a dry run."""
    text = render_report(gather_report(ctx))
    print()
    print(text)
    logger.info("Completion report:\n%s", text)

    report_file = ctx.paths.report_file(ctx.decisions.timestamp)
    if ctx.dry_run:
        log_action(f"[DRY RUN] Would write {report_file}")
        return text
    try:
        report_file.parent.mkdir(parents=True, exist_ok=True)
        report_file.write_text(text)
    except OSError as e:
        log_warn(f"Could not write report {report_file}: {e}")
    return text
