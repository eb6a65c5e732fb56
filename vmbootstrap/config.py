"""Run configuration: system locations, the decision set and its wire form."""
import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from vmbootstrap.utils import FatalError, Runner, die
from vmbootstrap.validation import (
    validate_cidr, validate_dns_list, validate_hostname, validate_ip
)

SCRIPT_VERSION = "2.1.0"

PHASE_ENV = "BOOTSTRAP_PHASE"
PAYLOAD_ENV = "BOOTSTRAP_DECISIONS"
PAYLOAD_VERSION = 1

NETPLAN_FILE_NAME = "99-bootstrap-static.yaml"
REBOOT_DELAY = 5


@dataclass(frozen=True)
class Paths:
    """Every file and directory the tool reads or writes."""
    marker: Path = Path("/etc/bootstrap-done")
    lock_file: Path = Path("/run/bootstrap-vm.lock")
    log_dir: Path = Path("/var/log")
    report_dir: Path = Path("/root")
    backup_root: Path = Path("/root")
    netplan_dir: Path = Path("/etc/netplan")
    hosts: Path = Path("/etc/hosts")
    resolv_conf: Path = Path("/etc/resolv.conf")
    machine_id: Path = Path("/etc/machine-id")
    dbus_machine_id: Path = Path("/var/lib/dbus/machine-id")
    ssh_dir: Path = Path("/etc/ssh")
    cloud_instances: Path = Path("/var/lib/cloud/instances")
    dmi_dir: Path = Path("/sys/class/dmi/id")
    meminfo: Path = Path("/proc/meminfo")
    root_home: Path = Path("/root")
    home_dir: Path = Path("/home")
    waagent_dir: Path = Path("/var/lib/waagent")
    apt_lists: Path = Path("/var/lib/apt/lists")
    random_seed: Path = Path("/var/lib/systemd/random-seed")
    tmp_dirs: Tuple[Path, ...] = (Path("/tmp"), Path("/var/tmp"))

    @classmethod
    def rooted(cls, root) -> "Paths":
        """Re-base every location under ``root``."""
        root = Path(root)
        defaults = cls()
        values = {}
        for f in fields(cls):
            value = getattr(defaults, f.name)
            if isinstance(value, tuple):
                values[f.name] = tuple(root / p.relative_to("/") for p in value)
            else:
                values[f.name] = root / value.relative_to("/")
        return cls(**values)

    @property
    def netplan_file(self) -> Path:
        """The static configuration file this tool writes."""
        return self.netplan_dir / NETPLAN_FILE_NAME

    def logfile(self, timestamp: str) -> Path:
        """Path of the run log."""
        return self.log_dir / f"bootstrap-{timestamp}.log"

    def report_file(self, timestamp: str) -> Path:
        """Path of the completion report for a run."""
        return self.report_dir / f"bootstrap-report-{timestamp}.txt"

    def backup_dir(self, timestamp: str) -> Path:
        """Directory holding the netplan backup for a run."""
        return self.backup_root / f"netplan-backups-{timestamp}"

    def user_homes(self) -> List[Path]:
        """root's home followed by every directory under /home."""
        homes = [self.root_home]
        if self.home_dir.is_dir():
            homes.extend(sorted(p for p in self.home_dir.iterdir() if p.is_dir()))
        return homes


def new_timestamp() -> str:
    """Run identifier used in log, report and backup names."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def _yes(value: Optional[str]) -> bool:
    """Interpret a legacy yes/no toggle."""
    return (value or "").strip().lower() in ("yes", "y", "true", "1")


# Legacy key/value hand-off: environment variable -> DecisionSet field
LEGACY_ENV_KEYS = {
    "BOOT_NEW_HOSTNAME": "new_hostname",
    "BOOT_CHANGE_IP": "change_ip",
    "BOOT_PRIMARY_IF": "interface",
    "BOOT_STATIC_IP": "static_ip",
    "BOOT_GATEWAY": "gateway",
    "BOOT_DNS_SERVERS": "dns_servers",
    "BOOT_CLOUD_INIT_CLEAN": "cloud_init_clean",
    "BOOT_CLEAN_CREDS": "clean_creds",
    "BOOT_EXPAND_DISK": "expand_disk",
    "BOOT_SYSPREP": "sysprep",
    "BOOT_TIMESTAMP": "timestamp",
    "BOOT_LOGFILE": "logfile",
}


@dataclass(frozen=True)
class DecisionSet:
    """Everything the operator decided, frozen at confirmation."""
    new_hostname: str = ""
    change_ip: bool = False
    interface: str = ""
    static_ip: str = ""
    gateway: str = ""
    dns_servers: str = ""
    cloud_init_clean: bool = False
    clean_creds: bool = False
    expand_disk: bool = False
    sysprep: bool = False
    dry_run: bool = False
    force: bool = False
    force_rerun: bool = False
    timestamp: str = field(default_factory=new_timestamp)
    logfile: str = ""

    def validate(self) -> None:
        """Raise FatalError naming the first malformed value."""
        if self.new_hostname and not validate_hostname(self.new_hostname):
            die(f"Invalid hostname format: {self.new_hostname}")
        if not self.change_ip:
            return
        if not self.interface:
            die("Static IP requested but no network interface given")
        if not validate_cidr(self.static_ip):
            die(f"Invalid CIDR format: {self.static_ip}")
        if not validate_ip(self.gateway):
            die(f"Invalid gateway IP: {self.gateway}")
        if not validate_dns_list(self.dns_servers):
            die(f"Invalid DNS server list: {self.dns_servers}")

    @property
    def dns_list(self) -> List[str]:
        """DNS servers as a list, whitespace removed."""
        return [s for s in (''.join(d.split()) for d in self.dns_servers.split(',')) if s]

    def to_payload(self) -> str:
        """Serialize for the hand-off across the privilege boundary."""
        return json.dumps({"version": PAYLOAD_VERSION, "decisions": asdict(self)},
                          sort_keys=True)

    @classmethod
    def from_payload(cls, raw: str) -> "DecisionSet":
        """Load decisions from the JSON hand-off, rejecting anything malformed."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FatalError(f"Malformed decision payload: {e}") from e
        if not isinstance(data, dict):
            die("Malformed decision payload: expected an object")
        if data.get("version") != PAYLOAD_VERSION:
            die(f"Unsupported decision payload version: {data.get('version')}")

        decisions = data.get("decisions")
        if not isinstance(decisions, dict):
            die("Decision payload has no decisions")

        types = {f.name: f.type for f in fields(cls)}
        unknown = sorted(set(decisions) - set(types))
        if unknown:
            die(f"Unknown fields in decision payload: {', '.join(unknown)}")
        for name, value in decisions.items():
            if type(value) is not types[name]:
                die(f"Decision '{name}' must be {types[name].__name__}, got {value!r}")
        return cls(**decisions)

    @classmethod
    def from_environ(cls, env: Mapping[str, str], **overrides) -> "DecisionSet":
        """Build from the legacy ``BOOT_*`` variables."""
        types = {f.name: f.type for f in fields(cls)}
        values = {}
        for key, name in LEGACY_ENV_KEYS.items():
            raw = env.get(key, "").strip()
            if not raw:
                continue
            values[name] = _yes(raw) if types[name] is bool else raw
        values.update(overrides)
        return cls(**values)


@dataclass
class BootstrapContext:
    """State shared by every apply step."""
    decisions: DecisionSet
    paths: Paths = field(default_factory=Paths)
    runner: Runner = None

    def __post_init__(self):
        if self.runner is None:
            self.runner = Runner(dry_run=self.decisions.dry_run)

    @property
    def dry_run(self) -> bool:
        """Whether mutations are only previewed."""
        return self.decisions.dry_run

    @property
    def logfile(self) -> Path:
        """Path of the run log."""
        if self.decisions.logfile:
            return Path(self.decisions.logfile)
        return self.paths.logfile(self.decisions.timestamp)
