"""Apply phase: the ordered operation catalog run as root."""
import fcntl
import os
import re
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Tuple

from vmbootstrap.config import REBOOT_DELAY, SCRIPT_VERSION, BootstrapContext
from vmbootstrap.detect import detect_primary_ip, has_cloud_init
from vmbootstrap.disk import expand_root_filesystem
from vmbootstrap.marker import render_marker, write_marker
from vmbootstrap.netplan import configure_static_ip
from vmbootstrap.report import write_report
from vmbootstrap.sysprep import clean_system_state
from vmbootstrap.utils import (
    FatalError, die, is_root, log_action, log_info, log_step, log_success, log_warn, logger,
    setup_logging
)

HOSTS_ALIAS = "127.0.1.1"
_HOSTS_ALIAS_RE = re.compile(r"^127\.0\.1\.1[ \t].*$", re.MULTILINE)


def update_system(ctx: BootstrapContext) -> None:
    """Refresh package lists and apply all upgrades."""
    log_step("Updating system packages")
    ctx.runner.run("apt-get", "update", warn="apt update failed")
    ctx.runner.run("apt-get", "-y", "full-upgrade", warn="apt full-upgrade failed")
    ctx.runner.run("apt-get", "-y", "autoremove")
    ctx.runner.run("apt-get", "clean")
    log_success("System packages updated")


def regenerate_ssh_keys(ctx: BootstrapContext) -> None:
    """Replace the SSH host keys inherited from the template."""
    log_step("Regenerating SSH host keys")
    for key in sorted(ctx.paths.ssh_dir.glob("ssh_host_*")):
        ctx.runner.remove(key)
    ctx.runner.run("dpkg-reconfigure", "openssh-server",
                   warn="dpkg-reconfigure openssh-server failed")
    # Ubuntu names the unit ssh, other Debian derivatives sshd
    if not ctx.runner.run("systemctl", "restart", "ssh"):
        ctx.runner.run("systemctl", "restart", "sshd")
    log_success("SSH host keys regenerated")


def reset_machine_id(ctx: BootstrapContext) -> None:
    """Empty machine-id so a new one is generated on next boot."""
    log_step("Resetting machine-id")
    paths = ctx.paths
    if paths.machine_id.exists():
        ctx.runner.truncate(paths.machine_id)
    else:
        # the dbus symlink needs a target
        ctx.runner.write_text(paths.machine_id, "", mode=0o444)
    ctx.runner.symlink(paths.machine_id, paths.dbus_machine_id)
    log_success("Machine-id reset")


def clean_logs(ctx: BootstrapContext) -> None:
    """Rotate and vacuum the systemd journal."""
    log_step("Cleaning journal logs")
    ctx.runner.run("journalctl", "--rotate")
    ctx.runner.run("journalctl", "--vacuum-time=1s")
    log_success("Journal logs cleaned")


def clean_cloud_init(ctx: BootstrapContext) -> None:
    """Reset cloud-init so it runs again on next boot."""
    if not has_cloud_init():
        return
    log_step("Cleaning cloud-init state")
    ctx.runner.run("cloud-init", "clean", "--logs", "--seed", warn="cloud-init clean failed")
    log_success("Cloud-init state cleaned")


def cloud_credential_paths(ctx: BootstrapContext) -> List[Path]:
    """AWS, Azure and GCP credentials plus root's provisioning authorized_keys."""
    paths = ctx.paths
    homes = paths.user_homes()

    targets = [home / ".aws" for home in homes]
    if paths.waagent_dir.is_dir():
        targets.extend(sorted(paths.waagent_dir.glob("*.xml")))
    targets.extend(home / ".config" / "gcloud" for home in homes)
    targets.append(paths.root_home / ".ssh" / "authorized_keys")
    return targets


def clean_cloud_credentials(ctx: BootstrapContext) -> None:
    """Delete cloud provider credentials left on the image."""
    log_step("Cleaning cloud provider credentials")
    for target in cloud_credential_paths(ctx):
        if target.exists() or target.is_symlink() or ctx.dry_run:
            ctx.runner.remove(target)
    log_success("Cloud credentials cleaned")


def update_hosts_content(content: str, hostname: str) -> str:
    """Point the 127.0.1.1 alias at ``hostname``, replacing the line if there is one."""
    entry = f"{HOSTS_ALIAS}\t{hostname}"
    if _HOSTS_ALIAS_RE.search(content):
        return _HOSTS_ALIAS_RE.sub(entry, content, count=1)
    if content and not content.endswith("\n"):
        content += "\n"
    return f"{content}{entry}\n"


def set_hostname(ctx: BootstrapContext) -> None:
    """Set the new hostname and its /etc/hosts alias."""
    hostname = ctx.decisions.new_hostname
    log_step(f"Setting hostname to '{hostname}'")
    ctx.runner.run("hostnamectl", "set-hostname", hostname, warn="hostnamectl failed")

    hosts = ctx.paths.hosts
    if ctx.dry_run:
        log_action(f"[DRY RUN] Would update {hosts} for {hostname}")
    else:
        # bytes that are not UTF-8 round-trip unchanged
        current = hosts.read_text(errors="surrogateescape") if hosts.exists() else ""
        ctx.runner.write_text(hosts, update_hosts_content(current, hostname),
                              errors="surrogateescape")
    log_success("Hostname configured")


def finish(ctx: BootstrapContext) -> None:
    """Report, then record success in the marker."""
    write_report(ctx)
    if ctx.dry_run:
        log_action(f"[DRY RUN] Would write marker {ctx.paths.marker}")
        return
    write_marker(ctx.paths.marker, render_marker(
        hostname=socket.gethostname(),
        version=SCRIPT_VERSION,
        ip=detect_primary_ip(),
        logfile=str(ctx.logfile),
    ))


def reboot(ctx: BootstrapContext) -> None:
    """Announce completion and reboot."""
    print()
    print("=" * 58)
    log_success("Bootstrap complete!")
    print("=" * 58)
    log_info(f"Rebooting in {REBOOT_DELAY} seconds...")
    if ctx.dry_run:
        log_action("[DRY RUN] Would reboot now")
        return
    time.sleep(REBOOT_DELAY)
    ctx.runner.run("reboot", warn="reboot failed, please reboot manually")


def plan_steps(ctx: BootstrapContext) -> List[Tuple[str, Callable[[BootstrapContext], None]]]:
    """The operation catalog for this run, in execution order."""
    decisions = ctx.decisions
    steps = [
        ("update system packages", update_system),
        ("regenerate SSH host keys", regenerate_ssh_keys),
        ("reset machine-id", reset_machine_id),
        ("clean journal logs", clean_logs),
    ]
    if decisions.cloud_init_clean:
        steps.append(("clean cloud-init state", clean_cloud_init))
    if decisions.clean_creds:
        steps.append(("clean cloud credentials", clean_cloud_credentials))
    if decisions.new_hostname:
        steps.append(("set hostname", set_hostname))
    if decisions.change_ip:
        steps.append(("configure static IP", configure_static_ip))
    if decisions.expand_disk:
        steps.append(("expand root filesystem", expand_root_filesystem))
    if decisions.sysprep:
        steps.append(("clean system state", clean_system_state))
    steps.append(("write report and marker", finish))
    steps.append(("reboot", reboot))
    return steps


def run_step(name: str, step: Callable[[BootstrapContext], None], ctx: BootstrapContext) -> None:
    """Run one step; anything short of a FatalError becomes a warning."""
    try:
        step(ctx)
    except FatalError:
        raise
    except Exception as e:
        logger.debug("Step %r failed", name, exc_info=True)
        log_warn(f"Step '{name}' failed: {e}")


@contextmanager
def run_lock(ctx: BootstrapContext) -> Iterator[None]:
    """Hold an exclusive lock so two apply phases never overlap."""
    if ctx.dry_run:
        yield
        return
    lock_file = ctx.paths.lock_file
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_file, "w") as handle:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise FatalError(f"Another bootstrap run is in progress ({lock_file} is locked)") from e
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


def apply_phase(ctx: BootstrapContext, verbose: bool = False) -> None:
    """Execute every decided operation, then report, mark and reboot."""
    if not is_root():
        die("The apply phase requires root privileges")

    setup_logging(verbose, None if ctx.dry_run else ctx.logfile)
    os.environ["DEBIAN_FRONTEND"] = "noninteractive"

    print()
    print("=" * 60)
    print("   Executing Bootstrap")
    print("=" * 60)
    if ctx.dry_run:
        print("  DRY-RUN MODE - no changes will be applied")

    with run_lock(ctx):
        for name, step in plan_steps(ctx):
            run_step(name, step, ctx)
