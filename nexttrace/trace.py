"""Trace configuration, hops, results and hop enrichment."""

from __future__ import annotations

import enum
import queue
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .ipfilter import filter_ip
from .ipgeo import IPGeoData, Source
from .listener import ReceivedMessage
from .util import lookup_addr, settings

MIN_GEO_TIMEOUT = 2.0
RDNS_WAIT = 1.0


class TraceError(Exception):
    """Base class for traceroute errors."""


class InvalidMethodError(TraceError):
    def __init__(self, message: str = "invalid method") -> None:
        super().__init__(message)


class TracerouteExecutedError(TraceError):
    def __init__(self, message: str = "traceroute already executed") -> None:
        super().__init__(message)


class HopTimeoutError(TraceError):
    def __init__(self, message: str = "hop timeout") -> None:
        super().__init__(message)


class Method(str, enum.Enum):
    ICMP = "icmp"
    UDP = "udp"
    TCP = "tcp"


@dataclass
class Config:
    """Settings for one traceroute run. Times are in seconds, intervals in milliseconds."""

    src_addr: str = ""
    begin_hop: int = 1
    max_hops: int = 30
    num_measurements: int = 3
    parallel_requests: int = 18
    timeout: float = 1.0
    dest_ip: Any = None
    dest_port: int = 0
    quic: bool = False
    ip_geo_source: Optional[Source] = None
    rdns: bool = False
    always_wait_rdns: bool = False
    packet_interval: int = 50
    ttl_interval: int = 50
    lang: str = ""
    dn42: bool = False
    realtime_printer: Optional[Callable[["Result", int], None]] = None
    async_printer: Optional[Callable[["Result"], None]] = None
    pkt_size: int = 52
    maptrace: bool = False
    dont_fragment: bool = False


_geo_cache: dict[str, IPGeoData] = {}
_geo_cache_lock = threading.Lock()


@dataclass
class Hop:
    """One probe's answer, or its timeout. ``rtt`` is in seconds."""

    success: bool = False
    address: Optional[str] = None
    hostname: str = ""
    ttl: int = 0
    rtt: float = 0.0
    error: Optional[BaseException] = None
    geo: Optional[IPGeoData] = None
    lang: str = ""
    mpls: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "Success": self.success,
            "Address": None if self.address is None else {"IP": self.address, "Zone": ""},
            "Hostname": self.hostname,
            "TTL": self.ttl,
            "RTT": int(round(self.rtt * 1e9)),
            "Error": None if self.error is None else {},
            "Geo": None if self.geo is None else self.geo.to_dict(),
            "Lang": self.lang,
            "MPLS": list(self.mpls) if self.mpls else None,
        }

    def fetch_ip_data(self, config: Config) -> None:
        """Fill in the host name and geolocation; re-raise a failure of the geo source."""
        if config.dn42:
            self._fetch_dn42(config)
            return

        events: queue.Queue = queue.Queue()
        rdns_started = config.rdns and not self.hostname
        if rdns_started:
            threading.Thread(target=self._reverse, args=(events,), daemon=True).start()
        threading.Thread(target=self._locate, args=(config, events), daemon=True).start()

        pending = object()
        geo_error: Any = pending
        if not config.always_wait_rdns:
            kind, value = events.get()
            if kind == "rdns":
                if value:
                    self.hostname = value[0][:-1]
            else:
                geo_error = value
        elif rdns_started:
            deadline = time.monotonic() + RDNS_WAIT
            while (remaining := deadline - time.monotonic()) > 0:
                try:
                    kind, value = events.get(timeout=remaining)
                except queue.Empty:
                    break
                if kind == "rdns":
                    if value:
                        self.hostname = value[0]
                    break
                geo_error = value
        if geo_error is pending:
            geo_error = _await_geo(events)
        if geo_error is not None:
            raise geo_error

    def _fetch_dn42(self, config: Config) -> None:
        ip = ""
        try:
            names = lookup_addr(str(self.address))
        except OSError:
            names = []
        if names:
            self.hostname = names[0][:-1]
            ip = f"{self.address},{self.hostname}"
        try:
            self.geo = config.ip_geo_source(ip, config.timeout, config.lang, config.maptrace)
        except Exception:
            self.geo = IPGeoData()

    def _reverse(self, events: queue.Queue) -> None:
        try:
            names = lookup_addr(str(self.address))
        except (OSError, UnicodeError):
            names = None
        events.put(("rdns", names))

    def _locate(self, config: Config, events: queue.Queue) -> None:
        error = None
        if config.ip_geo_source is not None and self.geo is None:
            self.lang = config.lang
            address = str(self.address)
            self.geo = filter_ip(address)
            if self.geo is None:
                timeout = max(config.timeout, MIN_GEO_TIMEOUT)
                with _geo_cache_lock:
                    cached = _geo_cache.get(address)
                if cached is not None:
                    self.geo = cached
                else:
                    try:
                        self.geo = config.ip_geo_source(address, timeout, config.lang, config.maptrace)
                    except Exception as exc:
                        self.geo = IPGeoData()
                        error = exc
                    else:
                        with _geo_cache_lock:
                            _geo_cache[address] = self.geo
        events.put(("geo", error))


def _await_geo(events: queue.Queue):
    while True:
        kind, value = events.get()
        if kind == "geo":
            return value


@dataclass
class Result:
    """Hops grouped by TTL: ``hops[ttl - 1]`` holds the probes sent with that TTL."""

    hops: list[list[Hop]] = field(default_factory=list)
    trace_map_url: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, hop: Hop) -> None:
        with self._lock:
            while len(self.hops) < hop.ttl:
                self.hops.append([])
            self.hops[hop.ttl - 1].append(hop)

    def reduce(self, final: int) -> None:
        """Drop every TTL group after ``final`` when it lies inside the result."""
        with self._lock:
            if 0 < final < len(self.hops):
                del self.hops[final:]

    def to_dict(self) -> dict:
        with self._lock:
            hops = [[hop.to_dict() for hop in group] for group in self.hops]
        return {"Hops": hops, "TraceMapUrl": self.trace_map_url}


def extract_mpls(msg: ReceivedMessage, data: bytes, payload_size: int) -> Optional[list[str]]:
    """Decode the MPLS label stack from the ICMP extension of a reply, if any."""
    if settings.disable_mpls:
        return None
    if payload_size != 52:
        return None

    extension_offset = 20 + 8 + payload_size
    if len(data) <= extension_offset:
        return None
    extension_body = data[extension_offset:]
    if len(extension_body) < 8 or len(extension_body) % 8 != 0:
        return None

    length = msg.n if msg.n is not None else len(msg.msg)
    text = msg.msg[:length].hex()
    index = text.find("01" * (payload_size - 4) + "00004fff")
    if index == -1:
        return None
    text = text[index + payload_size * 2:]
    index1 = text.find("00002000")
    count = len(text[index1 + 4:]) // 8 - 2
    if count < 1:
        return None
    text = text[index1 + 4 + 16:]

    labels = []
    try:
        for i in range(count):
            word = text[i * 8:i * 8 + 8]
            if len(word) < 8:
                return None
            label = int(word[:5], 16)
            bits = format(int(word[5], 16), "04b")
            traffic_class = int(bits[:3], 2)
            bottom = bits[3:]
            mpls_ttl = int(word[6:8], 16)
            labels.append(f"[MPLS: Lbl {label}, TC {traffic_class}, S {bottom}, TTL {mpls_ttl}]")
    except ValueError:
        return None
    return labels


_FAMILIES = {"ip4": socket.AF_INET, "ip6": socket.AF_INET6}
_PROTOCOLS = {"icmp": 1, "tcp": 6, "udp": 17, "ipv6-icmp": 58}


def listen_icmp(network: str, laddr: str = "") -> socket.socket:
    """Open a raw socket such as ``ip4:icmp`` or ``ip6:58``, bound to ``laddr`` if given."""
    family_name, sep, proto = network.partition(":")
    family = _FAMILIES.get(family_name)
    if family is None or not sep:
        raise ValueError(f"unknown network {network}")
    number = int(proto) if proto.isdigit() else _PROTOCOLS.get(proto.lower())
    if number is None:
        raise ValueError(f"unknown protocol {proto}")
    sock = socket.socket(family, socket.SOCK_RAW, number)
    try:
        if laddr:
            sock.bind((laddr, 0))
    except OSError:
        sock.close()
        raise
    return sock