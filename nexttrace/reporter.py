"""Summary of a finished trace as a path of autonomous systems and places."""

from __future__ import annotations

import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from .ipgeo import IPGeoData
from .trace import Result
from .util import lookup_addr

EXPERIMENT_TAG = "Route-Path 功能实验室"
IXP_MARK = " \033[42;37mIXP\033[0m"
CN2_PREFIX = "59.43"
CN2_ASN = "4809"
_UNLOCATED = ("", "LAN Address", "-")


@dataclass(frozen=True)
class _RouteNode:
    asn: str
    isp: str
    geo: tuple[str, str]
    ix: bool = False


def _mentions_exchange(text: str) -> bool:
    lowered = text.lower()
    return "exchange" in lowered or "ix" in lowered


class Reporter:
    """Builds the route-path view of ``result`` for a trace towards ``target_ip``.

    ``resolver`` turns an address into its PTR names; it defaults to the cached
    reverse lookup.
    """

    def __init__(
        self,
        result: Result,
        target_ip: str,
        *,
        resolver: Callable[[str], list[str]] = lookup_addr,
    ) -> None:
        self.result = result
        self.target_ip = str(target_ip)
        self._resolver = resolver

    def _is_ix_ptr(self, ip: str) -> bool:
        try:
            names = self._resolver(ip)
        except (OSError, UnicodeError, ValueError):
            return False
        return bool(names) and "ix" in names[0].lower()

    def _node(self, ip: str, geo: IPGeoData) -> Optional[_RouteNode]:
        ix = self._is_ix_ptr(ip)
        if _mentions_exchange(geo.isp) or _mentions_exchange(geo.owner):
            ix = True

        asn = CN2_ASN if ip.startswith(CN2_PREFIX) else geo.asnumber
        if not geo.asnumber:
            asn = "*"

        if geo.country in _UNLOCATED and ip != self.target_ip:
            return None
        place = (geo.country, geo.city) if geo.city else (geo.country, geo.prov)
        return _RouteNode(asn=asn, isp=geo.isp or geo.owner, geo=place, ix=ix)

    def _collect(self) -> dict[int, list[_RouteNode]]:
        jobs = []
        for ttl, group in enumerate(self.result.hops):
            if group and group[0].success:
                hop = group[0]
                geo = hop.geo if hop.geo is not None else IPGeoData()
                jobs.append((ttl, str(hop.address), geo))
        if not jobs:
            return {}
        with ThreadPoolExecutor(max_workers=min(len(jobs), 32)) as pool:
            nodes = list(pool.map(lambda job: self._node(job[1], job[2]), jobs))
        report: dict[int, list[_RouteNode]] = {}
        for (ttl, _, _), node in zip(jobs, nodes):
            if node is not None:
                report.setdefault(ttl, []).append(node)
        return report

    def render(self) -> str:
        """Return the route path as text, without a trailing newline."""
        report = self._collect()
        target_ttl = len(self.result.hops)
        before = next((ttl for ttl in range(target_ttl) if report.get(ttl)), 0)

        out: list[str] = []
        for ttl in range(before, target_ttl):
            nodes = report.get(ttl)
            if not nodes:
                continue
            node = nodes[0]
            if ttl == before:
                out.append(f"AS{node.asn} {node.isp}「{node.geo[0]}『{node.geo[1]}")
            else:
                previous = report[before][0]
                if previous.asn == node.asn:
                    if previous.geo[0] != node.geo[0]:
                        out.append(f"』→ {node.geo[0]}『{node.geo[1]}")
                    elif previous.geo[1] != node.geo[1]:
                        out.append(f" → {node.geo[1]}")
                else:
                    out.append("』」")
                    if ttl != len(report) + 1:
                        out.append("\n ╭╯\n ╰")
                    mark = IXP_MARK if node.ix else ""
                    out.append(f"AS{node.asn}{mark} {node.isp}「{node.geo[0]}『{node.geo[1]}")
            before = ttl
        out.append("』」")
        return "".join(out)

    def print(self) -> str:
        """Write the experiment tag and the route path to standard output; return the path."""
        sys.stdout.write(EXPERIMENT_TAG + "\n")
        path = self.render()
        sys.stdout.write(path + "\n")
        sys.stdout.flush()
        return path