"""Rendering a whole trace result as a table."""

from __future__ import annotations

from tabulate import tabulate
from termcolor import colored

from .ipgeo import IPGeoData
from .trace import Hop, Result

HEADERS = ("Hop", "IP", "Lantency", "ASN", "Location", "Owner")
CLEAR_SCREEN = "\033[H\033[2J"
LAN_PREFIXES = ("9.", "11.")


def _hop_fields(hop: Hop) -> dict[str, str]:
    fields = dict.fromkeys(("hop", "ip", "latency", "asn", "country", "prov", "city", "owner"), "")
    fields["hop"] = str(hop.ttl)
    if hop.address is None:
        fields["ip"] = "*"
        return fields

    fields["latency"] = f"{hop.rtt * 1000:.2f}ms"
    ip = str(hop.address)
    if ip.startswith(LAN_PREFIXES):
        fields["ip"] = ip
        fields["country"] = "LAN Address"
        return fields

    if hop.hostname:
        ip = f"{hop.hostname} ({ip}) "
    geo = hop.geo if hop.geo is not None else IPGeoData()
    fields.update(
        ip=ip,
        asn=geo.asnumber,
        country=geo.country_en,
        prov=geo.prov_en,
        city=geo.city_en,
        owner=geo.owner or geo.isp,
    )
    return fields


def _location(fields: dict[str, str]) -> str:
    if fields["city"]:
        return f"{fields['city']}, {fields['prov']}, {fields['country']}"
    if fields["prov"]:
        return f"{fields['prov']}, {fields['country']}"
    return fields["country"]


def table_rows(result: Result) -> list[tuple[str, str, str, str, str, str]]:
    """Return one row per probe: hop, IP, latency, ASN, location and owner."""
    rows = []
    for group in result.hops:
        for index, hop in enumerate(group):
            fields = _hop_fields(hop)
            rows.append(
                (
                    fields["hop"] if index == 0 else "",
                    fields["ip"],
                    fields["latency"],
                    fields["asn"],
                    _location(fields),
                    fields["owner"],
                )
            )
    return rows


def _render(result: Result) -> str:
    headers = [colored(name, "green", attrs=["underline"]) for name in HEADERS]
    rows = [(colored(row[0], "yellow"), *row[1:]) for row in table_rows(result)]
    return tabulate(rows, headers=headers, tablefmt="plain")


def traceroute_table_printer(result: Result) -> None:
    """Clear the screen and print the whole result as a table."""
    print(CLEAR_SCREEN, end="")
    print(_render(result))