"""Console output: the banner, the trace header and per-hop printers."""

from __future__ import annotations

import ipaddress
import sys
from dataclasses import dataclass, field

from termcolor import colored

from .ipgeo import IPGeoData
from .trace import Hop, Result
from .util import BUILD_DATE, COMMIT_ID, VERSION, hide_ip_part, settings

BOLD = ["bold"]

_GOLD_ASNS = frozenset({"58807", "10099", "4809", "9929", "23764"})
_GOLD_WHOIS = frozenset({"CTG-CN", "[CNC-BACKBONE]", "[CUG-BACKBONE]", "CMIN2-NET"})
_GOLD_WHOIS_TAGS = frozenset({"[CTG-CN]", "[CNC-BACKBONE]", "[CUG-BACKBONE]", "[CMIN2-NET]"})
_GOLD_PREFIX = "59.43."


def version_banner() -> str:
    """Return the coloured program name, version, build date and commit."""
    return " ".join(
        (
            colored("NextTrace", "white", attrs=BOLD),
            colored(VERSION, "dark_grey", attrs=BOLD),
            colored(BUILD_DATE, "dark_grey", attrs=BOLD),
            colored(COMMIT_ID, "dark_grey", attrs=BOLD),
        )
    )


def print_version() -> str:
    """Write the version banner to standard output and return it."""
    banner = version_banner()
    sys.stdout.write(banner + "\n")
    sys.stdout.flush()
    return banner


def traceroute_nav(ip, domain: str, data_origin: str, max_hops: int, packet_size: int) -> str:
    """Return the two header lines printed before a trace."""
    target = str(ip)
    if settings.enable_hidden_dst_ip:
        line = f"traceroute to {hide_ip_part(target)}, {max_hops} hops max, {packet_size} bytes payload"
    elif target == domain:
        line = f"traceroute to {target}, {max_hops} hops max, {packet_size} bytes payload"
    else:
        line = f"traceroute to {target} ({domain}), {max_hops} hops max, {packet_size} bytes payload"
    return f"IP Geo Data Provider: {data_origin}\n{line}"


def print_traceroute_nav(ip, domain: str, data_origin: str, max_hops: int, packet_size: int) -> None:
    print(traceroute_nav(ip, domain, data_origin, max_hops, packet_size))


def apply_lang_setting(hop: Hop) -> None:
    """Fill an empty country and, for English output, move the English names into place."""
    if hop.geo is None:
        hop.geo = IPGeoData()
    geo = hop.geo
    if len(geo.country.encode("utf-8")) <= 1:
        if geo.whois:
            geo.country = geo.whois
        elif geo.source != "LeoMoeAPI":
            geo.country, geo.country_en = "网络故障", "Network Error"
        else:
            geo.country, geo.country_en = "未知", "Unknown"

    if hop.lang != "en" or geo.country == "Anycast":
        return
    if geo.prov == "骨干网":
        geo.prov = "BackBone"
    elif not geo.prov_en:
        geo.country = geo.country_en
    elif not geo.city_en:
        geo.country, geo.prov, geo.city = geo.prov_en, geo.country_en, ""
    else:
        geo.country, geo.prov, geo.city = geo.city_en, geo.prov_en, geo.country_en


def _rtt_ms(rtt: float) -> float:
    return (round(rtt * 1e9) // 1000) / 1000


def easy_lines(result: Result, ttl: int) -> list[str]:
    """Return one pipe-separated line per probe sent with ``ttl + 1``."""
    lines = []
    for hop in result.hops[ttl]:
        if hop.address is None:
            lines.append(f"{ttl + 1}|*||||||")
            continue
        apply_lang_setting(hop)
        geo = hop.geo
        lines.append(
            f"{ttl + 1}|{hop.address}|{hop.hostname}|{_rtt_ms(hop.rtt):.2f}|{geo.asnumber}|"
            f"{geo.country}|{geo.prov}|{geo.city}|{geo.district}|{geo.owner}|{geo.lat:.4f}|{geo.lng:.4f}"
        )
    return lines


def easy_printer(result: Result, ttl: int) -> None:
    for line in easy_lines(result, ttl):
        print(line)


@dataclass
class _Probes:
    index: int
    latencies: list[str] = field(default_factory=list)


def _group_probes(hops: list[Hop]) -> dict[str, _Probes]:
    groups: dict[str, _Probes] = {}
    latest = ""
    for index, hop in enumerate(hops):
        if hop.address is None:
            if latest:
                groups[latest].latencies.append("* ms")
            continue
        ip = str(hop.address)
        if ip not in groups:
            groups[ip] = _Probes(index)
            if not latest:
                groups[ip].latencies.extend(["* ms"] * index)
            latest = ip
        groups[ip].latencies.append(f"{hop.rtt * 1000:.2f} ms")
    return groups


def _is_ipv4(ip: str) -> bool:
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return parsed.version == 4 or parsed.ipv4_mapped is not None


def _whois_tag(whois: str) -> str:
    parts = whois.split("-")
    tag = "-".join(parts[:2]) if len(parts) > 1 else parts[0]
    if not tag:
        return ""
    if tag.startswith("RFC") or tag.startswith("DOD"):
        return ""
    return f"[{tag}]"


def _gold(geo: IPGeoData, address: str, whois_match: bool) -> bool:
    return geo.asnumber in _GOLD_ASNS or whois_match or address.startswith(_GOLD_PREFIX)


def _realtime_text(result: Result, ttl: int) -> str:
    out = [colored(f"{ttl + 1:<2d}", "light_yellow", attrs=BOLD) + "  "]
    groups = _group_probes(result.hops[ttl])
    if not groups:
        out.append(colored("*", "white", attrs=BOLD) + "\n")
        return "".join(out)

    for position, (ip, probes) in enumerate(groups.items()):
        if position:
            out.append("    ")
        ipv4 = _is_ipv4(ip)
        shown = ip
        if settings.enable_hidden_dst_ip and ip == settings.dest_ip:
            shown = hide_ip_part(ip)
        out.append(colored(f"{shown:<15}" if ipv4 else f"{shown:<25}", "white", attrs=BOLD))

        hop = result.hops[ttl][probes.index]
        if hop.geo is None:
            hop.geo = IPGeoData()
        geo = hop.geo
        address = str(hop.address)
        if geo.asnumber:
            color = "light_yellow" if _gold(geo, address, geo.whois in _GOLD_WHOIS) else "light_green"
            out.append(" " + colored(f"AS{geo.asnumber:<6}", color, attrs=BOLD))
        else:
            out.append(f" {'*':<8}")

        if ipv4:
            tag = _whois_tag(geo.whois)
            color = "light_yellow" if _gold(geo, address, tag in _GOLD_WHOIS_TAGS) else "light_green"
            out.append(" " + colored(f"{tag:<16}", color, attrs=BOLD))

        apply_lang_setting(hop)
        geo = hop.geo
        hostname = f"{hop.hostname:<39}" if ipv4 else f"{hop.hostname:<32}"
        out.append(
            " "
            + " ".join(colored(value, "white", attrs=BOLD) for value in (geo.country, geo.prov, geo.city, geo.district))
            + f" {geo.owner:<6}\n    "
            + colored(hostname, "dark_grey", attrs=BOLD)
            + "   "
        )
        out.append(" / ".join(colored(value, "light_cyan", attrs=BOLD) for value in probes.latencies))
        for label in hop.mpls:
            out.append(colored(f"\n    {label}", "dark_grey", attrs=BOLD))
        out.append("\n")
    return "".join(out)


def realtime_printer(result: Result, ttl: int) -> None:
    """Print the probes of one TTL, grouped by answering address."""
    print(_realtime_text(result, ttl), end="")