"""Best-effort environment detection.

Every probe here tolerates missing tooling and returns an empty string when
the answer is inconclusive; nothing in this module raises.
"""
import re
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from vmbootstrap.config import Paths
from vmbootstrap.utils import capture, command_exists
from vmbootstrap.validation import validate_ip

PHYSICAL = "physical"

VENDOR_SIGNATURES: Sequence[Tuple[str, str]] = (
    ("amazon", "amazon"),
    ("microsoft", "azure"),
    ("google", "gce"),
    ("digitalocean", "digitalocean"),
)

PRODUCT_SIGNATURES: Sequence[Tuple[str, str]] = (
    ("virtualbox", "virtualbox"),
    ("vmware", "vmware"),
    ("kvm", "kvm"),
    ("qemu", "kvm"),
    ("xen", "xen"),
    ("hyper-v", "hyperv"),
)

MAX_DNS_SERVERS = 3


def _read(path: Path) -> str:
    """Stripped file content, or an empty string when unreadable."""
    try:
        return path.read_text().strip()
    except (OSError, UnicodeDecodeError):
        return ""


def _match_signature(text: str, table: Iterable[Tuple[str, str]]) -> Optional[str]:
    """Platform of the first needle found in ``text``, case-insensitively."""
    text = text.lower()
    for needle, platform in table:
        if needle in text:
            return platform
    return None


class PlatformProber:
    """One source of virtualization facts."""
    name = "base"

    def probe(self) -> Optional[str]:
        """Return a platform name, or None when this source has no answer."""
        raise NotImplementedError


class SystemdDetectVirtProber(PlatformProber):
    name = "systemd-detect-virt"

    def probe(self) -> Optional[str]:
        if not command_exists("systemd-detect-virt"):
            return None
        result = capture("systemd-detect-virt")
        if not result or result == "none":
            return None
        return result


class DmiVendorProber(PlatformProber):
    name = "sys_vendor"

    def __init__(self, dmi_dir: Path):
        self.path = dmi_dir / "sys_vendor"

    def probe(self) -> Optional[str]:
        return _match_signature(_read(self.path), VENDOR_SIGNATURES)


class DmiProductProber(PlatformProber):
    name = "product_name"

    def __init__(self, dmi_dir: Path):
        self.path = dmi_dir / "product_name"

    def probe(self) -> Optional[str]:
        return _match_signature(_read(self.path), PRODUCT_SIGNATURES)


def default_probers(paths: Paths) -> List[PlatformProber]:
    """The virtualization probers in the order they are consulted."""
    return [
        SystemdDetectVirtProber(),
        DmiVendorProber(paths.dmi_dir),
        DmiProductProber(paths.dmi_dir),
    ]


def detect_virtualization(probers: Iterable[PlatformProber]) -> str:
    """Ask each prober in turn; the first answer wins."""
    for prober in probers:
        result = prober.probe()
        if result:
            return result
    return PHYSICAL


def _field_after(tokens: List[str], keyword: str) -> str:
    """Token following ``keyword``, or an empty string."""
    if keyword in tokens:
        index = tokens.index(keyword)
        if index + 1 < len(tokens):
            return tokens[index + 1]
    return ""


def detect_primary_interface() -> str:
    """Interface of the default route, else the first non-loopback link."""
    for line in capture("ip", "route", "show", "default", "0.0.0.0/0").splitlines():
        iface = _field_after(line.split(), "dev")
        if iface:
            return iface

    # ip -o link show: "2: eth0: <BROADCAST,...> mtu 1500 ..."
    for line in capture("ip", "-o", "link", "show").splitlines():
        parts = line.split(": ")
        if len(parts) < 2:
            continue
        iface = parts[1].split("@")[0].strip()
        if iface and iface != "lo":
            return iface
    return ""


def detect_current_ip(iface: str) -> str:
    """First IPv4 address of ``iface`` in CIDR notation."""
    for line in capture("ip", "-4", "addr", "show", "dev", iface).splitlines():
        tokens = line.split()
        if tokens and tokens[0] == "inet":
            return _field_after(tokens, "inet")
    return ""


def detect_current_gateway() -> str:
    """Gateway of the default route."""
    for line in capture("ip", "route", "show", "default").splitlines():
        tokens = line.split()
        if tokens and tokens[0] == "default":
            return _field_after(tokens, "via")
    return ""


def _ipv4_servers(text: str) -> List[str]:
    """IPv4 addresses in ``text``, at most MAX_DNS_SERVERS."""
    return [token for token in text.split() if validate_ip(token)][:MAX_DNS_SERVERS]


def detect_current_dns(iface: str = "", resolv_conf: Path = Path("/etc/resolv.conf")) -> str:
    """Comma-separated resolvers: systemd-resolved first, then resolv.conf."""
    if command_exists("resolvectl"):
        servers: List[str] = []
        if iface:
            output = capture("resolvectl", "dns", iface)
            servers = _ipv4_servers(output.partition(": ")[2])
        if not servers:
            for line in capture("resolvectl", "dns").splitlines():
                if re.match(r"^(Global|Link)", line):
                    servers = _ipv4_servers(line.partition(": ")[2])
                    if servers:
                        break
        if servers:
            return ",".join(servers)

    nameservers = []
    for line in _read(resolv_conf).splitlines():
        tokens = line.split()
        if len(tokens) >= 2 and tokens[0] == "nameserver":
            nameservers.append(tokens[1])
    return ",".join(_ipv4_servers(" ".join(nameservers)))


def detect_root_device() -> str:
    """Block device mounted at /."""
    return capture("findmnt", "-n", "-o", "SOURCE", "/")


def detect_root_fstype() -> str:
    """Filesystem type mounted at /."""
    return capture("findmnt", "-n", "-o", "FSTYPE", "/")


def detect_primary_ip() -> str:
    """First address reported by ``hostname -I``."""
    addresses = capture("hostname", "-I").split()
    return addresses[0] if addresses else ""


def has_cloud_init() -> bool:
    """Check if cloud-init is installed."""
    return command_exists("cloud-init")


def is_cloud_clone(paths: Paths) -> bool:
    """cloud-init ran with a real cloud datasource on this image."""
    try:
        return paths.cloud_instances.is_dir() and any(paths.cloud_instances.iterdir())
    except OSError:
        return False
