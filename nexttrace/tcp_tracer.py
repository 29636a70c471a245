"""Traceroute with TCP SYN probes over IPv4 and IPv6."""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import queue
import random
import socket
import struct
import threading
import time
from typing import Optional

from .listener import PacketListener, ReceivedMessage
from .packets import icmp_response_payload, tcp_seq
from .trace import (
    Config,
    Hop,
    HopTimeoutError,
    Result,
    TracerouteExecutedError,
    listen_icmp,
)
from .util import local_ip_port, local_ip_port_v6

_log = logging.getLogger(__name__)

TCP_WINDOW = 14600
TCP_SYN = 0x02
TCP_HEADER_WORDS = 5
PRINT_INTERVAL = 0.2
READ_TIMEOUT = 0.5
# Sequence numbers are drawn from [0, 65535) to stay within 16 bits.
MAX_SEQ = 0xFFFF

ICMP_DEST_UNREACHABLE = 3
ICMP_TIME_EXCEEDED = 11
ICMPV6_DEST_UNREACHABLE = 1
ICMPV6_TIME_EXCEEDED = 3


def checksum(data: bytes) -> int:
    """Return the 16-bit one's complement Internet checksum of ``data``."""
    data = bytes(data)
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def _pseudo_header(src, dst, length: int) -> bytes:
    if src.version == 4:
        return src.packed + dst.packed + struct.pack("!BBH", 0, socket.IPPROTO_TCP, length)
    return src.packed + dst.packed + struct.pack("!I3xB", length, socket.IPPROTO_TCP)


def _check_port(port: int) -> int:
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    return port


def build_tcp_syn(src_ip, dst_ip, src_port: int, dst_port: int, seq: int, payload: bytes = b"") -> bytes:
    """Return a TCP SYN segment carrying ``payload``, its checksum set for the given addresses."""
    src = ipaddress.ip_address(str(src_ip))
    dst = ipaddress.ip_address(str(dst_ip))
    if src.version != dst.version:
        raise ValueError(f"address families differ: {src} and {dst}")
    header = struct.pack(
        "!HHIIBBHHH",
        _check_port(src_port),
        _check_port(dst_port),
        seq & 0xFFFFFFFF,
        0,
        TCP_HEADER_WORDS << 4,
        TCP_SYN,
        TCP_WINDOW,
        0,
        0,
    )
    segment = header + bytes(payload)
    value = checksum(_pseudo_header(src, dst, len(segment)) + segment)
    return segment[:16] + value.to_bytes(2, "big") + segment[18:]


class TCPTracer:
    """Sends TCP SYN segments with rising TTLs and collects the hops that answer."""

    network = "ip4:tcp"
    icmp_network = "ip4:icmp"
    ipv6 = False
    _keep_hop_on_geo_error = False

    def __init__(self, config: Config) -> None:
        self.config = config
        self.res = Result()
        self.src_ip = None
        self._dest = ipaddress.ip_address(str(config.dest_ip))
        self._final = -1
        self._final_lock = threading.Lock()
        self._fetch_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._inflight: dict[int, queue.Queue] = {}
        self._inflight_lock = threading.Lock()
        self._stop = threading.Event()
        self._sem = threading.Semaphore(max(config.parallel_requests, 1))
        self._tcp = None

    @property
    def final(self) -> int:
        """TTL at which the destination answered, or -1."""
        return self._final

    def execute(self) -> Result:
        """Run the trace once and return its result."""
        if self.res.hops:
            raise TracerouteExecutedError()
        self.src_ip, _ = self._local_address()
        if self.src_ip is None:
            raise OSError(f"cannot find a source address to reach {self._dest}")

        with contextlib.ExitStack() as stack:
            tcp_sock = stack.enter_context(
                contextlib.closing(listen_icmp(self.network, self._tcp_bind_address()))
            )
            icmp_sock = stack.enter_context(
                contextlib.closing(listen_icmp(self.icmp_network, self._icmp_bind_address()))
            )
            self._tcp = tcp_sock
            self._final = -1
            self._stop.clear()
            with self._inflight_lock:
                self._inflight = {}
            strip = not self.ipv6
            icmp_listener = stack.enter_context(
                PacketListener(icmp_sock, strip_ipv4_header=strip, read_timeout=READ_TIMEOUT)
            )
            tcp_listener = stack.enter_context(
                PacketListener(tcp_sock, strip_ipv4_header=strip, read_timeout=READ_TIMEOUT)
            )
            stack.callback(self._stop.set)
            for listener, handler in ((icmp_listener, self._handle_icmp), (tcp_listener, self._handle_tcp)):
                threading.Thread(target=self._receive, args=(listener, handler), daemon=True).start()
            self._run_probes()

        self.res.reduce(self._final)
        return self.res

    def _run_probes(self) -> None:
        config = self.config
        senders: list[threading.Thread] = []
        for ttl in range(config.begin_hop, config.max_hops + 1):
            if self._past_final(ttl):
                break
            for _ in range(config.num_measurements):
                sender = threading.Thread(target=self._send, args=(ttl,), daemon=True)
                sender.start()
                senders.append(sender)
                time.sleep(config.packet_interval / 1000)
            if config.realtime_printer is not None:
                for sender in senders:
                    sender.join()
                config.realtime_printer(self.res, ttl - 1)
            time.sleep(config.ttl_interval / 1000)

        if config.async_printer is not None:
            threading.Thread(target=self._async_print_loop, daemon=True).start()
        if config.realtime_printer is None:
            for sender in senders:
                sender.join()

    def _async_print_loop(self) -> None:
        while not self._stop.is_set():
            self.config.async_printer(self.res)
            self._stop.wait(PRINT_INTERVAL)

    def _local_address(self):
        return local_ip_port(self._dest)

    def _tcp_bind_address(self) -> str:
        return self.config.src_addr or str(self.src_ip)

    def _icmp_bind_address(self) -> str:
        return self.config.src_addr

    def _set_ttl(self, sock, ttl: int) -> None:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)

    def _sockaddr(self):
        return (str(self._dest), 0)

    def _is_destination(self, address) -> bool:
        try:
            return ipaddress.ip_address(str(address)) == self._dest
        except ValueError:
            return False

    def _past_final(self, ttl: int) -> bool:
        return self._final != -1 and ttl > self._final

    def _send(self, ttl: int) -> None:
        with self._sem:
            try:
                self._probe(ttl)
            except (OSError, ValueError) as exc:
                _log.debug("TCP probe with TTL %d failed: %s", ttl, exc)

    def _probe(self, ttl: int) -> None:
        if self._past_final(ttl):
            return
        config = self.config
        seq = random.randrange(MAX_SEQ)
        _, src_port = self._local_address()
        if src_port is None or src_port < 0:
            raise OSError(f"cannot find a source port to reach {self._dest}")
        payload = random.randbytes(max(config.pkt_size, 0))
        packet = build_tcp_syn(self.src_ip, self._dest, src_port, config.dest_port, seq, payload)

        replies: queue.Queue = queue.Queue(maxsize=1)
        with self._inflight_lock:
            self._inflight[seq] = replies
        try:
            with self._send_lock:
                self._set_ttl(self._tcp, ttl)
                start = time.monotonic()
                self._tcp.sendto(packet, self._sockaddr())
            try:
                hop = replies.get(timeout=config.timeout)
            except queue.Empty:
                if self._past_final(ttl):
                    return
                self.res.add(Hop(success=False, ttl=ttl, error=HopTimeoutError()))
                return
        finally:
            with self._inflight_lock:
                if self._inflight.get(seq) is replies:
                    del self._inflight[seq]

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
                hop.fetch_ip_data(config)
            except Exception as exc:  # the geo source may fail in any way
                _log.debug("IP data lookup for %s failed: %s", hop.address, exc)
                if not self._keep_hop_on_geo_error:
                    return
        self.res.add(hop)

    def _receive(self, listener: PacketListener, handler) -> None:
        while not self._stop.is_set():
            msg = listener.get(timeout=PRINT_INTERVAL)
            if msg is None or msg.n is None:
                continue
            handler(msg)

    def _deliver(self, key: int, peer: Optional[str]) -> bool:
        with self._inflight_lock:
            replies = self._inflight.get(key)
        if replies is None:
            return False
        try:
            replies.put_nowait(Hop(success=True, address=peer))
        except queue.Full:
            pass
        return True

    def _handle_icmp(self, msg: ReceivedMessage) -> None:
        data = msg.msg[: msg.n]
        if len(data) < 28:
            return
        if ipaddress.IPv4Address(data[24:28]) != self._dest:
            return
        if data[0] not in (ICMP_TIME_EXCEEDED, ICMP_DEST_UNREACHABLE):
            return
        try:
            seq = tcp_seq(icmp_response_payload(data[8:]))
        except ValueError:
            return
        self._deliver(seq, msg.peer)

    def _handle_tcp(self, msg: ReceivedMessage) -> None:
        if not self._is_destination(msg.peer):
            return
        data = msg.msg[: msg.n]
        if len(data) < 20:
            return
        ack = int.from_bytes(data[8:12], "big")
        self._deliver((ack - 1) & 0xFFFFFFFF, msg.peer)


class TCPTracerV6(TCPTracer):
    """IPv6 variant of the TCP SYN traceroute."""

    network = "ip6:tcp"
    icmp_network = "ip6:58"
    ipv6 = True
    _keep_hop_on_geo_error = True

    def execute(self) -> Result:
        """Run the trace to an IPv6 destination once and return its result."""
        return super().execute()

    def _local_address(self):
        return local_ip_port_v6(self._dest)

    def _tcp_bind_address(self) -> str:
        return str(self.src_ip)

    def _icmp_bind_address(self) -> str:
        return "::"

    def _set_ttl(self, sock, ttl: int) -> None:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, ttl)

    def _sockaddr(self):
        return (str(self._dest), 0, 0, 0)

    def _handle_icmp(self, msg: ReceivedMessage) -> None:
        data = msg.msg[: msg.n]
        if len(data) < 56:
            return
        if data[0] not in (ICMPV6_TIME_EXCEEDED, ICMPV6_DEST_UNREACHABLE):
            return
        self._deliver(int.from_bytes(data[52:56], "big"), msg.peer)