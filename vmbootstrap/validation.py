"""Input validators. Each one is a pure predicate over a string."""
import re

_HOSTNAME_RE = re.compile(r'[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?')
_IP_RE = re.compile(r'([0-9]{1,3}\.){3}[0-9]{1,3}')


def validate_ip(ip: str) -> bool:
    """Check for a dotted-quad IPv4 address with every octet in 0-255."""
    if not _IP_RE.fullmatch(ip):
        return False
    return all(int(octet) <= 255 for octet in ip.split('.'))


def validate_cidr(cidr: str) -> bool:
    """Check for ``<ipv4>/<prefix>`` with a prefix in 0-32."""
    if '/' not in cidr:
        return False
    ip, _, mask = cidr.partition('/')
    if not validate_ip(ip):
        return False
    return mask.isdigit() and mask.isascii() and 0 <= int(mask) <= 32


def validate_dns_list(dns_list: str) -> bool:
    """Check a comma-separated list of IPv4 servers. Empty means no override."""
    if not dns_list:
        return True
    return all(validate_ip(''.join(server.split())) for server in dns_list.split(','))


def validate_hostname(hostname: str) -> bool:
    """Check for a single RFC-1123 label."""
    return bool(_HOSTNAME_RE.fullmatch(hostname))
