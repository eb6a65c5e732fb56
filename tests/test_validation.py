"""Tests for the input validators."""
import pytest

from vmbootstrap.validation import (
    validate_cidr, validate_dns_list, validate_hostname, validate_ip
)


class TestValidateIP:
    """Tests for IPv4 address validation."""

    @pytest.mark.parametrize("ip", ["0.0.0.0", "10.0.5.20", "255.255.255.255", "192.168.1.1"])
    def test_valid_addresses(self, ip):
        assert validate_ip(ip) is True

    @pytest.mark.parametrize("ip", [
        "",
        "256.1.1.1",
        "1.2.3",
        "1.2.3.4.5",
        "a.b.c.d",
        "1.2.3.-4",
        "1234.1.1.1",
        " 1.2.3.4",
        "1.2.3.4\n",
        "::1",
    ])
    def test_invalid_addresses(self, ip):
        assert validate_ip(ip) is False

    def test_every_accepted_segment_is_in_range(self):
        """Exactly four segments, each an integer between 0 and 255."""
        for ip in ("1.2.3.4", "255.0.255.0", "9.99.199.249"):
            assert validate_ip(ip)
            segments = ip.split(".")
            assert len(segments) == 4
            assert all(0 <= int(s) <= 255 for s in segments)


class TestValidateCIDR:
    """Tests for CIDR validation."""

    @pytest.mark.parametrize("cidr", ["10.0.5.20/24", "0.0.0.0/0", "192.168.1.1/32"])
    def test_valid_cidr(self, cidr):
        assert validate_cidr(cidr) is True

    @pytest.mark.parametrize("cidr", [
        "10.0.5.20",
        "10.0.5.20/",
        "10.0.5.20/33",
        "10.0.5.20/-1",
        "10.0.5.20/abc",
        "300.0.5.20/24",
        "10.0.5.20/24/1",
        "/24",
    ])
    def test_invalid_cidr(self, cidr):
        assert validate_cidr(cidr) is False


class TestValidateDNSList:
    """Tests for comma-separated DNS server validation."""

    def test_empty_means_no_override(self):
        assert validate_dns_list("") is True

    def test_single_server(self):
        assert validate_dns_list("8.8.8.8") is True

    def test_multiple_servers_with_spaces(self):
        assert validate_dns_list("8.8.8.8, 1.1.1.1") is True

    def test_one_bad_token_fails_the_list(self):
        assert validate_dns_list("8.8.8.8,1.1.1.256") is False
        assert validate_dns_list("8.8.8.8,dns.google") is False

    def test_whitespace_only_is_not_empty(self):
        assert validate_dns_list(" ") is False


class TestValidateHostname:
    """Tests for hostname validation."""

    @pytest.mark.parametrize("hostname", ["a", "web-01", "DB1", "x" * 63, "a-b-c"])
    def test_valid_hostnames(self, hostname):
        assert validate_hostname(hostname) is True

    @pytest.mark.parametrize("hostname", [
        "",
        "-web",
        "web-",
        "-",
        "x" * 64,
        "web_01",
        "web.example.com",
        "web 01",
    ])
    def test_invalid_hostnames(self, hostname):
        assert validate_hostname(hostname) is False
