"""Interactive phase: detect, ask, validate and confirm."""
import socket
from typing import Callable, List, Optional

import typer

from vmbootstrap.config import SCRIPT_VERSION, DecisionSet, Paths, new_timestamp
from vmbootstrap.detect import (
    default_probers, detect_current_dns, detect_current_gateway, detect_current_ip,
    detect_primary_interface, detect_virtualization, has_cloud_init, is_cloud_clone
)
from vmbootstrap.marker import check_previous_run
from vmbootstrap.utils import die, log_info
from vmbootstrap.validation import (
    validate_cidr, validate_dns_list, validate_hostname, validate_ip
)

CREDENTIAL_TARGETS = (
    "~/.aws credentials",
    "Azure waagent configs",
    "GCP gcloud configs",
    "root authorized_keys",
)


class Prompter:
    """Asks the operator questions. With ``force`` every question takes its default."""

    def __init__(self, force: bool = False):
        self.force = force

    def ask_yes_no(self, prompt: str, default: bool = False) -> bool:
        """Ask a yes/no question."""
        if self.force:
            return default
        return typer.confirm(prompt, default=default)

    def ask_text(self, prompt: str, default: str = "") -> str:
        """Ask for free text, stripped of surrounding whitespace."""
        if self.force:
            return default
        value = typer.prompt(prompt, default=default, show_default=bool(default))
        return value.strip()

    def confirm_proceed(self) -> bool:
        """Final go/no-go. Force mode means the operator already said yes."""
        if self.force:
            return True
        return typer.confirm("Proceed with these changes?", default=False)


def banner(text: str) -> None:
    """Print a boxed heading."""
    width = 60
    typer.echo()
    typer.echo("+" + "-" * width + "+")
    typer.echo("|" + text.center(width) + "|")
    typer.echo("+" + "-" * width + "+")
    typer.echo()


def render_summary(decisions: DecisionSet, virt: str, current_hostname: str) -> str:
    """Human-readable list of everything the apply phase is about to do."""
    lines: List[str] = [
        f"  Environment:        {virt}",
        f"  Current hostname:   {current_hostname}",
    ]
    if decisions.new_hostname:
        lines.append(f"  New hostname:       {decisions.new_hostname}")
    lines += [
        "",
        "  Operations to perform:",
        "",
        "    [x] Update system packages",
        "    [x] Regenerate SSH host keys",
        "    [x] Reset machine-id",
        "    [x] Clean journal logs",
    ]
    if decisions.cloud_init_clean:
        lines.append("    [x] Clean cloud-init state")
    if decisions.clean_creds:
        lines.append("    [!] Clean cloud credentials (destructive)")
    if decisions.new_hostname:
        lines.append(f"    [x] Set hostname: {decisions.new_hostname}")
    if decisions.change_ip:
        lines += [
            "    [x] Configure static IP:",
            f"        Interface: {decisions.interface}",
            f"        IP/CIDR:   {decisions.static_ip}",
            f"        Gateway:   {decisions.gateway}",
        ]
        if decisions.dns_servers:
            lines.append(f"        DNS:       {decisions.dns_servers}")
    if decisions.expand_disk:
        lines.append("    [x] Expand root filesystem")
    if decisions.sysprep:
        lines.append("    [x] Clean system state (sysprep)")
    lines += ["    [x] Reboot system", ""]
    if decisions.dry_run:
        lines += ["  DRY-RUN MODE - No changes will be applied", ""]
    return "\n".join(lines)


def _ask_validated(prompter: Prompter, prompt: str, detected: str, example: str,
                   check: Callable[[str], bool], error: str) -> str:
    """Prompt pre-filled with ``detected`` (or showing ``example``); invalid input is fatal."""
    if detected:
        value = prompter.ask_text(prompt, default=detected)
    else:
        value = prompter.ask_text(f"{prompt} ({example})")
    if not check(value):
        die(f"{error}: {value}")
    return value


def collect_decisions(paths: Paths, dry_run: bool = False, force: bool = False,
                      force_rerun: bool = False, timestamp: Optional[str] = None,
                      logfile: Optional[str] = None,
                      prompter: Optional[Prompter] = None) -> DecisionSet:
    """Run the interactive phase and return the confirmed decisions."""
    prompter = prompter or Prompter(force=force)

    banner(f"Ubuntu VM Bootstrap v{SCRIPT_VERSION}")
    if dry_run:
        typer.echo("  Running in DRY-RUN mode\n")

    check_previous_run(paths.marker, force_rerun, prompter.ask_yes_no)

    primary_if = detect_primary_interface()
    virt = detect_virtualization(default_probers(paths))
    log_info(f"Detected interface: {primary_if or 'none'}")
    log_info(f"Detected environment: {virt}")
    typer.echo()

    current_hostname = socket.gethostname()
    new_hostname = prompter.ask_text(f"New hostname (empty to keep '{current_hostname}')")
    if new_hostname and not validate_hostname(new_hostname):
        die(f"Invalid hostname format: {new_hostname}")

    change_ip = False
    static_ip = gateway = dns_servers = ""
    if primary_if and prompter.ask_yes_no(f"Configure static IP on '{primary_if}'?", False):
        change_ip = True
        static_ip = _ask_validated(
            prompter, "Static IP (CIDR)", detect_current_ip(primary_if),
            "CIDR format, e.g. 10.10.30.50/24", validate_cidr, "Invalid CIDR format")
        gateway = _ask_validated(
            prompter, "Gateway", detect_current_gateway(),
            "e.g. 10.10.30.1", validate_ip, "Invalid gateway IP")
        dns_servers = _ask_validated(
            prompter, "DNS servers (comma-separated)",
            detect_current_dns(primary_if, resolv_conf=paths.resolv_conf),
            "empty to skip", lambda value: validate_dns_list("".join(value.split())),
            "Invalid DNS server list")
        dns_servers = "".join(dns_servers.split())

    cloud_init_clean = has_cloud_init() and prompter.ask_yes_no("Clean cloud-init state?", False)

    clean_creds = False
    if is_cloud_clone(paths):
        typer.echo("\n  Cloud environment detected.")
        if prompter.ask_yes_no("Clean cloud credentials (AWS/Azure/GCP)? (destructive)", False):
            typer.echo("\n  WARNING: This will delete:")
            for target in CREDENTIAL_TARGETS:
                typer.echo(f"    - {target}")
            typer.echo()
            clean_creds = prompter.ask_yes_no("Are you SURE? This cannot be undone", False)

    expand_disk = prompter.ask_yes_no("Expand root filesystem to use all disk space?", True)
    sysprep = prompter.ask_yes_no("Clean system state (sysprep: history, logs, temp files)?", False)

    timestamp = timestamp or new_timestamp()
    decisions = DecisionSet(
        new_hostname=new_hostname,
        change_ip=change_ip,
        interface=primary_if,
        static_ip=static_ip,
        gateway=gateway,
        dns_servers=dns_servers,
        cloud_init_clean=cloud_init_clean,
        clean_creds=clean_creds,
        expand_disk=expand_disk,
        sysprep=sysprep,
        dry_run=dry_run,
        force=force,
        force_rerun=force_rerun,
        timestamp=timestamp,
        logfile=logfile or str(paths.logfile(timestamp)),
    )

    banner("Bootstrap Summary")
    typer.echo(render_summary(decisions, virt, current_hostname))

    if not prompter.confirm_proceed():
        die("Aborted by user")
    return decisions
