"""Traceroute with ICMP echo requests over IPv4 and IPv6."""

from __future__ import annotations

import contextlib
import enum
import ipaddress
import logging
import os
import queue
import socket
import struct
import threading
import time
from typing import Iterator, Optional

from .listener import PacketListener, ReceivedMessage
from .trace import (
    Config,
    Hop,
    HopTimeoutError,
    Result,
    TracerouteExecutedError,
    extract_mpls,
    listen_icmp,
)

_log = logging.getLogger(__name__)

ID_FIXED_HEADER = "10"
PRINT_INTERVAL = 0.2
READ_TIMEOUT = 0.5
MAX_ECHO_SEQ = 100

ICMP_ECHO_REPLY = 0
ICMP_DEST_UNREACHABLE = 3
ICMP_ECHO_REQUEST = 8
ICMP_TIME_EXCEEDED = 11
ICMPV6_DEST_UNREACHABLE = 1
ICMPV6_TIME_EXCEEDED = 3
ICMPV6_ECHO_REQUEST = 128
ICMPV6_ECHO_REPLY = 129

_PAYLOAD_TRAILER = b"\x00\x00\x4f\xff"


class _Reply(enum.IntEnum):
    TIME_EXCEEDED = 0
    ECHO_REPLY = 1
    UNREACHABLE = 2


def generate_id(ttl: int, pid: Optional[int] = None) -> int:
    """Build the 16-bit probe identifier: marker, 7 bits of pid, TTL bits and a parity bit."""
    if ttl < 0:
        raise ValueError(f"TTL must not be negative: {ttl}")
    if pid is None:
        pid = os.getpid()
    bits = ID_FIXED_HEADER + format(pid & 0x7F, "07b") + format(ttl, "06b")
    bits += "1" if bits.count("1") % 2 == 0 else "0"
    return int(bits, 2)


def reverse_id(packet_id) -> tuple[int, int]:
    """Return ``(pid, ttl)`` from a probe identifier given as an int or a binary string.

    Raises ValueError when the identifier is too short or fails its parity check.
    """
    bits = format(packet_id, "b") if isinstance(packet_id, int) else str(packet_id)
    if len(bits) < 16:
        raise ValueError("packet id too short")
    try:
        ttl = int(bits[9:15], 2)
        pid = int(bits[2:9], 2)
    except ValueError as exc:
        raise ValueError(f"malformed packet id: {bits}") from exc
    expected = "0" if bits[:-1].count("1") % 2 == 1 else "1"
    if bits[-1] != expected:
        raise ValueError("packet id parity check failed")
    return pid, ttl


def _checksum(data: bytes) -> int:
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def build_echo_request(ident: int, seq: int, payload_size: int, ipv6: bool = False) -> bytes:
    """Return an ICMP echo request carrying a ``payload_size``-byte marker payload.

    IPv6 requests leave the checksum to the kernel.
    """
    if payload_size < 5:
        raise ValueError(f"payload size must be at least 5 bytes: {payload_size}")
    data = b"\x00" + b"\x01" * (payload_size - 5) + _PAYLOAD_TRAILER
    kind = ICMPV6_ECHO_REQUEST if ipv6 else ICMP_ECHO_REQUEST
    header = struct.pack("!BBHHH", kind, 0, 0, ident & 0xFFFF, seq & 0xFFFF)
    if ipv6:
        return header + data
    checksum = _checksum(header + data)
    return header[:2] + checksum.to_bytes(2, "big") + header[4:] + data


def _error_body(data: bytes, words: int, unit: int) -> bytes:
    body = data[8:]
    return body[: words * unit] if words else body


class ICMPTracer:
    """Sends ICMP echo requests with rising TTLs and collects the hops that answer."""

    network = "ip4:1"
    ipv6 = False

    def __init__(self, config: Config, *, pid: Optional[int] = None) -> None:
        self.config = config
        self.res = Result()
        self._pid = (os.getpid() if pid is None else pid) & 0x7F
        self._dest = ipaddress.ip_address(str(config.dest_ip))
        self._final = -1
        self._final_lock = threading.Lock()
        self._fetch_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._inflight: dict[int, queue.Queue] = {}
        self._inflight_lock = threading.Lock()
        self._stop = threading.Event()
        self._sending_done = threading.Event()
        self._failures: list[BaseException] = []
        self._sock = None

    @property
    def final(self) -> int:
        """TTL at which the destination answered, or -1."""
        return self._final

    def execute(self) -> Result:
        """Run the trace once and return its result."""
        with self._inflight_lock:
            self._inflight = {}
        if self.res.hops:
            raise TracerouteExecutedError()

        sock = listen_icmp(self.network, self.config.src_addr)
        self._sock = sock
        self._final = -1
        self._stop.clear()
        self._sending_done.clear()
        listener = PacketListener(sock, strip_ipv4_header=not self.ipv6, read_timeout=READ_TIMEOUT)
        receiver = threading.Thread(target=self._receive, args=(listener,), daemon=True)
        printer = threading.Thread(target=self._print_loop, daemon=True)
        try:
            with contextlib.closing(sock), listener:
                receiver.start()
                printer.start()
                for sender in self._send_all():
                    sender.join()
                self._sending_done.set()
                printer.join()
                self._stop.set()
                receiver.join()
        finally:
            self._sending_done.set()
            self._stop.set()

        if self._failures:
            raise self._failures[0]

        config = self.config
        self.res.reduce(self._final)
        if self._final != -1:
            if config.realtime_printer is not None:
                config.realtime_printer(self.res, self._final - 1)
        else:
            for _ in range(config.num_measurements):
                self.res.add(Hop(success=False, ttl=config.max_hops, error=HopTimeoutError()))
            if config.realtime_printer is not None:
                config.realtime_printer(self.res, config.max_hops - 1)
        return self.res

    def _set_ttl(self, sock, ttl: int) -> None:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)

    def _sockaddr(self):
        return (str(self._dest), 0)

    def _is_destination(self, address) -> bool:
        try:
            return ipaddress.ip_address(str(address)) == self._dest
        except ValueError:
            return False

    def _matches_process(self, id_bytes: bytes) -> bool:
        try:
            pid, _ = reverse_id(int.from_bytes(id_bytes, "big"))
        except ValueError:
            return False
        return pid == self._pid

    def _past_final(self, ttl: int) -> bool:
        return self._final != -1 and ttl > self._final

    def _send_all(self) -> list[threading.Thread]:
        config = self.config
        senders: list[threading.Thread] = []
        for ttl in range(config.begin_hop, config.max_hops + 1):
            with self._inflight_lock:
                self._inflight[ttl] = queue.Queue(maxsize=max(config.num_measurements, 1))
            if self._past_final(ttl):
                break
            for _ in range(config.num_measurements):
                sender = threading.Thread(target=self._send, args=(ttl,), daemon=True)
                sender.start()
                senders.append(sender)
                time.sleep(config.packet_interval / 1000)
            time.sleep(config.ttl_interval / 1000)
        return senders

    def _send(self, ttl: int) -> None:
        if self._past_final(ttl):
            return
        with self._inflight_lock:
            replies = self._inflight[ttl]
        packet = build_echo_request(generate_id(0, self._pid), ttl, self.config.pkt_size, self.ipv6)
        try:
            with self._send_lock:
                self._set_ttl(self._sock, ttl)
                start = time.monotonic()
                self._sock.sendto(packet, self._sockaddr())
        except OSError as exc:
            self._failures.append(exc)
            return

        try:
            hop = replies.get(timeout=self.config.timeout)
        except queue.Empty:
            if self._past_final(ttl):
                return
            self.res.add(Hop(success=False, ttl=ttl, error=HopTimeoutError()))
            return

        rtt = time.monotonic() - start
        if self._past_final(ttl):
            return
        if self._is_destination(hop.address):
            with self._final_lock:
                if self._final == -1 or ttl < self._final:
                    self._final = ttl
        hop.ttl = ttl
        hop.rtt = rtt
        with self._fetch_lock:
            try:
                hop.fetch_ip_data(self.config)
            except Exception as exc:  # the geo source may fail in any way
                _log.debug("IP data lookup for %s failed: %s", hop.address, exc)
        self.res.add(hop)

    def _receive(self, listener: PacketListener) -> None:
        while not self._stop.is_set():
            msg = listener.get(timeout=PRINT_INTERVAL)
            if msg is None or msg.n is None:
                continue
            for kind, data, ttl in self._classify(msg):
                self._handle(msg, kind, data, ttl)

    def _classify(self, msg: ReceivedMessage) -> Iterator[tuple[_Reply, bytes, int]]:
        data = msg.msg[: msg.n]
        if len(data) < 8:
            return
        if data[0] == ICMP_ECHO_REPLY:
            seq = int.from_bytes(data[6:8], "big")
            if seq <= MAX_ECHO_SEQ and self._is_destination(msg.peer):
                yield _Reply.ECHO_REPLY, data[8:], seq
            return
        if len(data) < 36:
            return
        ttl = int.from_bytes(data[34:36], "big")
        if not self._matches_process(data[32:34]):
            return
        quoted_dst = ipaddress.IPv4Address(data[24:28])
        if quoted_dst != self._dest and quoted_dst != ipaddress.IPv4Address(0):
            return
        kind = {ICMP_TIME_EXCEEDED: _Reply.TIME_EXCEEDED, ICMP_DEST_UNREACHABLE: _Reply.UNREACHABLE}.get(data[0])
        if kind is not None:
            yield kind, _error_body(data, data[5], 4), ttl

    def _handle(self, msg: ReceivedMessage, kind: _Reply, data: bytes, ttl: int) -> None:
        if kind == _Reply.UNREACHABLE and not self._is_destination(msg.peer):
            return
        mpls = extract_mpls(msg, data, self.config.pkt_size)
        with self._inflight_lock:
            replies = self._inflight.get(ttl)
        if replies is None:
            return
        try:
            replies.put_nowait(Hop(success=True, address=msg.peer, mpls=mpls or []))
        except queue.Full:
            pass

    def _print_loop(self) -> None:
        config = self.config
        ttl = config.begin_hop - 1
        while True:
            if config.async_printer is not None:
                config.async_printer(self.res)
            hops = self.res.hops
            if len(hops) - 1 > ttl and len(hops[ttl]) == config.num_measurements:
                if config.realtime_printer is not None:
                    config.realtime_printer(self.res, ttl)
                ttl += 1
                if ttl == self._final - 1 or ttl >= config.max_hops - 1:
                    return
                continue
            if self._sending_done.is_set():
                return
            self._sending_done.wait(PRINT_INTERVAL)


class ICMPTracerV6(ICMPTracer):
    """ICMPv6 variant of the echo traceroute."""

    network = "ip6:58"
    ipv6 = True

    def execute(self) -> Result:
        """Run the trace to an IPv6 destination once and return its result."""
        return super().execute()

    def _set_ttl(self, sock, ttl: int) -> None:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, ttl)

    def _sockaddr(self):
        return (str(self._dest), 0, 0, 0)

    def _classify(self, msg: ReceivedMessage) -> Iterator[tuple[_Reply, bytes, int]]:
        data = msg.msg[: msg.n]
        if len(data) < 8:
            return
        if data[0] == ICMPV6_ECHO_REPLY:
            seq = int.from_bytes(data[6:8], "big")
            if seq > MAX_ECHO_SEQ:
                return
            if self._is_destination(msg.peer):
                yield _Reply.ECHO_REPLY, data[8:], seq
        if len(data) < 56:
            return
        ttl = int.from_bytes(data[54:56], "big")
        if not self._matches_process(data[52:54]):
            return
        quoted_dst = ipaddress.IPv6Address(data[32:48])
        if quoted_dst == ipaddress.IPv6Address(0) or quoted_dst != self._dest:
            return
        if data[0] == ICMPV6_ECHO_REPLY:
            yield _Reply.ECHO_REPLY, data[8:], ttl
            return
        kind = {ICMPV6_TIME_EXCEEDED: _Reply.TIME_EXCEEDED, ICMPV6_DEST_UNREACHABLE: _Reply.UNREACHABLE}.get(data[0])
        if kind is not None:
            yield kind, _error_body(data, data[4], 8), ttl