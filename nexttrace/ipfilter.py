"""Classification of reserved, private and otherwise non-routable addresses."""

from __future__ import annotations

import ipaddress

from .ipgeo import IPGeoData

_RESERVED = [
    (ipaddress.ip_network(cidr), whois)
    for cidr, whois in (
        ("0.0.0.0/8", "RFC1122"),
        ("100.64.0.0/10", "RFC6598"),
        ("127.0.0.0/8", "RFC1122"),
        ("169.254.0.0/16", "RFC3927"),
        ("192.0.0.0/24", "RFC6890"),
        ("192.0.2.0/24", "RFC5737"),
        ("192.88.99.0/24", "RFC3068"),
        ("198.18.0.0/15", "RFC2544"),
        ("198.51.100.0/24", "RFC5737"),
        ("203.0.113.0/24", "RFC5737"),
        ("224.0.0.0/4", "RFC5771"),
        ("255.255.255.255/32", "RFC0919"),
        ("240.0.0.0/4", "RFC1112"),
        ("fe80::/10", "RFC4291"),
        ("ff00::/8", "RFC4291"),
        ("fec0::/10", "RFC3879"),
        ("fe00::/9", "RFC4291"),
        ("64:ff9b::/96", "RFC6052"),
        ("::/96", "RFC4291"),
        ("64:ff9b:1::/48", "RFC6052"),
        ("2001:db8::/32", "RFC3849"),
        ("2002::/16", "RFC3056"),
    )
]

_PRIVATE = [
    (ipaddress.ip_network("10.0.0.0/8"), "RFC1918"),
    (ipaddress.ip_network("172.16.0.0/12"), "RFC1918"),
    (ipaddress.ip_network("192.168.0.0/16"), "RFC1918"),
    (ipaddress.ip_network("fc00::/7"), "RFC4193"),
]

_DOD = [
    ipaddress.ip_network(f"{octet}.0.0.0/8")
    for octet in (6, 7, 11, 21, 22, 26, 28, 29, 30, 33, 55, 214, 215)
]

_GLOBAL_UNICAST_V6 = ipaddress.ip_network("2000::/3")


def _parse(ip: str):
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return None
    if address.version == 6 and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _contains(network, address) -> bool:
    return address is not None and address.version == network.version and address in network


def filter_ip(ip: str) -> IPGeoData | None:
    """Return a record naming the RFC that reserves ``ip``, or None for a routable address."""
    address = _parse(ip)
    for network, whois in (*_RESERVED, *_PRIVATE):
        if _contains(network, address):
            return IPGeoData(asnumber="", whois=whois)
    if any(_contains(network, address) for network in _DOD):
        return IPGeoData(asnumber="", whois="DOD")
    if address is None or (address.version == 6 and address not in _GLOBAL_UNICAST_V6):
        return IPGeoData(asnumber="", whois="INVALID")
    return None