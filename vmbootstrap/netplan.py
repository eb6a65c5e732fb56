"""Static IP configuration through netplan.

The change runs as a small state machine::

    BACKING_UP -> GENERATING -> VALIDATING -> COMMITTED
                       |             |
                       +-------------+-----> ROLLED_BACK

The new file is only compiled with ``netplan generate``, never applied, so the
current SSH session survives; the configuration takes effect on next boot.
"""
import enum
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import yaml

from vmbootstrap.config import SCRIPT_VERSION, BootstrapContext
from vmbootstrap.utils import (
    FatalError, log_action, log_info, log_step, log_success, log_warn
)


class NetplanState(enum.Enum):
    BACKING_UP = "backing-up"
    GENERATING = "generating"
    VALIDATING = "validating"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"


OK = "ok"
FAILED = "failed"

TRANSITIONS: Dict[Tuple[NetplanState, str], NetplanState] = {
    (NetplanState.BACKING_UP, OK): NetplanState.GENERATING,
    (NetplanState.GENERATING, OK): NetplanState.VALIDATING,
    (NetplanState.GENERATING, FAILED): NetplanState.ROLLED_BACK,
    (NetplanState.VALIDATING, OK): NetplanState.COMMITTED,
    (NetplanState.VALIDATING, FAILED): NetplanState.ROLLED_BACK,
}

TERMINAL_STATES = (NetplanState.COMMITTED, NetplanState.ROLLED_BACK)


def render_netplan(interface: str, address: str, gateway: str,
                   dns_servers: List[str], header: str = "") -> str:
    """Render a netplan document pinning ``interface`` to a static address."""
    ethernet = {
        "dhcp4": False,
        "addresses": [address],
        "routes": [{"to": "default", "via": gateway}],
    }
    if dns_servers:
        ethernet["nameservers"] = {"addresses": list(dns_servers)}

    document = {
        "network": {
            "version": 2,
            "renderer": "networkd",
            "ethernets": {interface: ethernet},
        }
    }
    body = yaml.safe_dump(document, default_flow_style=False, sort_keys=False)
    if header:
        body = f"# {header}\n{body}"
    return body


class StaticIPConfigurator:
    """Drives one static IP change from backup to commit or rollback."""

    def __init__(self, ctx: BootstrapContext,
                 validate: Optional[Callable[[], bool]] = None):
        self.ctx = ctx
        self.validate = validate or self._netplan_generate
        self.state = NetplanState.BACKING_UP
        self.history: List[NetplanState] = [self.state]
        self.backup_dir = ctx.paths.backup_dir(ctx.decisions.timestamp)
        self.netplan_dir = ctx.paths.netplan_dir
        self.netplan_file = ctx.paths.netplan_file

    def _netplan_generate(self) -> bool:
        """Validate the configuration with ``netplan generate``."""
        return self.ctx.runner.run("netplan", "generate", warn="netplan generate failed")

    def _advance(self, outcome: str) -> None:
        """Move to the next state for ``outcome``."""
        self.state = TRANSITIONS[(self.state, outcome)]
        self.history.append(self.state)

    def run(self) -> NetplanState:
        """Drive the machine to a terminal state; raise FatalError on rollback."""
        handlers = {
            NetplanState.BACKING_UP: self._back_up,
            NetplanState.GENERATING: self._generate,
            NetplanState.VALIDATING: self._validate,
        }
        while self.state not in TERMINAL_STATES:
            ok = handlers[self.state]()
            self._advance(OK if ok else FAILED)

        if self.state is NetplanState.ROLLED_BACK:
            self._roll_back()
            raise FatalError("Network configuration invalid and was rolled back")
        return self.state

    def _back_up(self) -> bool:
        """Copy the current netplan directory aside."""
        if self.ctx.dry_run:
            log_action(f"[DRY RUN] Would back up {self.netplan_dir} to {self.backup_dir}")
            return True
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            if self.netplan_dir.is_dir():
                for entry in self.netplan_dir.iterdir():
                    _copy_entry(entry, self.backup_dir / entry.name)
        except OSError as e:
            # nothing mutated yet
            raise FatalError(f"Could not back up {self.netplan_dir}: {e}") from e
        log_info(f"Backed up existing netplan configs to {self.backup_dir}")
        return True

    def _generate(self) -> bool:
        """Write the static configuration file."""
        decisions = self.ctx.decisions
        content = render_netplan(
            decisions.interface,
            decisions.static_ip,
            decisions.gateway,
            decisions.dns_list,
            header=f"Generated by bootstrap-vm v{SCRIPT_VERSION} on {decisions.timestamp}",
        )
        if not self.ctx.dry_run:
            self.netplan_dir.mkdir(parents=True, exist_ok=True)
        return self.ctx.runner.write_text(self.netplan_file, content, mode=0o600)

    def _validate(self) -> bool:
        """Check the written configuration."""
        if self.ctx.dry_run:
            log_action("[DRY RUN] Would run: netplan generate (validate only)")
            return True
        log_info("Validating netplan configuration...")
        if not self.validate():
            return False
        log_success("Network configuration validated")
        log_info(f"Config saved to {self.netplan_file}")
        log_info("Network changes will apply on next reboot")
        return True

    def _roll_back(self) -> None:
        """Remove the generated file and restore the backup."""
        log_warn("Netplan validation failed, restoring backup...")
        try:
            self.netplan_file.unlink(missing_ok=True)
        except OSError as e:
            log_warn(f"Could not remove {self.netplan_file}: {e}")
        if not self.backup_dir.is_dir():
            return
        for entry in self.backup_dir.iterdir():
            try:
                _copy_entry(entry, self.netplan_dir / entry.name)
            except OSError as e:
                log_warn(f"Could not restore {entry.name}: {e}")


def _copy_entry(source: Path, target: Path) -> None:
    """Copy a file, symlink or directory tree."""
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(source, target, follow_symlinks=False)


def configure_static_ip(ctx: BootstrapContext,
                        validate: Optional[Callable[[], bool]] = None) -> NetplanState:
    """Write, validate and keep (or roll back) the static IP configuration."""
    log_step(f"Configuring static IP on '{ctx.decisions.interface}'")
    return StaticIPConfigurator(ctx, validate=validate).run()
