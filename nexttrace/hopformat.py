"""Plain one-line rendering of a hop and its geolocation."""

from __future__ import annotations

from .ipgeo import IPGeoData
from .trace import Hop


def format_ip_geo_data(ip: str, data: IPGeoData) -> str:
    """Return the ASN, location and owner of ``ip`` as a comma-separated line."""
    parts = ["*" if not data.asnumber else "AS" + data.asnumber]

    if ip.startswith("9.") or ip.startswith("11."):
        parts += ["LAN Address", ""]
    elif not data.country:
        parts.append("LAN Address")
    else:
        owner = data.owner or data.isp
        city = f"{data.city}, {data.district}" if data.district else data.city
        if not data.prov and not city:
            owner = f"{owner}, {owner}"
        else:
            parts.append(data.country)
        parts += [value for value in (data.prov, city, owner) if value]
    return ", ".join(parts)


def format_hop(hop: Hop) -> str:
    """Return the tab-indented line describing ``hop``."""
    if hop.address is None:
        return "\t*"
    latency = f"{hop.rtt * 1000:.2f}ms"
    if hop.hostname:
        text = f"\t{hop.hostname} ({hop.address}) {latency}"
    else:
        text = f"\t{hop.address} {latency}"
    if hop.geo is not None:
        text += " " + format_ip_geo_data(hop.address, hop.geo)
    return text


def print_hop(hop: Hop) -> None:
    print(format_hop(hop))