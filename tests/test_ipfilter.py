import pytest

from nexttrace.ipfilter import filter_ip


def test_unique_local_ipv6_from_source_case():
    result = filter_ip("fd11::1")
    assert result is not None
    assert result.whois == "RFC4193"
    assert result.asnumber == ""


@pytest.mark.parametrize(
    "ip, whois",
    [
        ("0.1.2.3", "RFC1122"),
        ("100.64.1.1", "RFC6598"),
        ("127.0.0.1", "RFC1122"),
        ("169.254.10.10", "RFC3927"),
        ("192.0.0.8", "RFC6890"),
        ("192.0.2.1", "RFC5737"),
        ("192.88.99.1", "RFC3068"),
        ("198.18.0.1", "RFC2544"),
        ("198.51.100.7", "RFC5737"),
        ("203.0.113.9", "RFC5737"),
        ("224.0.0.1", "RFC5771"),
        ("255.255.255.255", "RFC0919"),
        ("240.0.0.1", "RFC1112"),
        ("fe80::1", "RFC4291"),
        ("ff02::1", "RFC4291"),
        ("fec0::1", "RFC3879"),
        ("64:ff9b::808:808", "RFC6052"),
        ("::1", "RFC4291"),
        ("2001:db8::1", "RFC3849"),
        ("2002::1", "RFC3056"),
        ("10.1.2.3", "RFC1918"),
        ("172.16.5.4", "RFC1918"),
        ("192.168.3.1", "RFC1918"),
        ("11.1.1.1", "DOD"),
        ("215.0.0.1", "DOD"),
        ("4000::1", "INVALID"),
        ("not-an-ip", "INVALID"),
    ],
)
def test_filtered_addresses(ip, whois):
    result = filter_ip(ip)
    assert result is not None
    assert result.whois == whois


@pytest.mark.parametrize("ip", ["8.8.8.8", "114.249.16.1", "2400:3200::1", "3fff::1"])
def test_routable_addresses_pass(ip):
    assert filter_ip(ip) is None