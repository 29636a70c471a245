"""Traceroute with UDP datagrams over IPv4."""

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
from .packets import icmp_response_payload, udp_src_port
from .tcp_tracer import checksum
from .trace import (
    Config,
    Hop,
    HopTimeoutError,
    Result,
    TracerouteExecutedError,
    listen_icmp,
)
from .util import local_ip_port

_log = logging.getLogger(__name__)

UDP_HEADER_SIZE = 8
PRINT_INTERVAL = 0.2
READ_TIMEOUT = 0.5
BUFFER_SIZE = 1500
MAX_BIND_ATTEMPTS = 5

ICMP_DEST_UNREACHABLE = 3
ICMP_TIME_EXCEEDED = 11


def _check_port(port: int) -> int:
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    return port


def _pseudo_header(src, dst, length: int) -> bytes:
    if src.version == 4:
        return src.packed + dst.packed + struct.pack("!BBH", 0, socket.IPPROTO_UDP, length)
    return src.packed + dst.packed + struct.pack("!I3xB", length, socket.IPPROTO_UDP)


def build_udp_datagram(src_ip, dst_ip, src_port: int, dst_port: int, payload: bytes = b"") -> bytes:
    """Return a UDP header followed by ``payload``, its checksum set for the given addresses."""
    src = ipaddress.ip_address(str(src_ip))
    dst = ipaddress.ip_address(str(dst_ip))
    if src.version != dst.version:
        raise ValueError(f"address families differ: {src} and {dst}")
    body = bytes(payload)
    length = UDP_HEADER_SIZE + len(body)
    if length > 0xFFFF:
        raise ValueError(f"datagram too long: {length} bytes")
    header = struct.pack("!HHHH", _check_port(src_port), _check_port(dst_port), length, 0)
    value = checksum(_pseudo_header(src, dst, length) + header + body)
    if value == 0:
        value = 0xFFFF
    return header[:6] + value.to_bytes(2, "big") + body


def _payload_size(pkt_size: int) -> int:
    """Size of the random payload: the packet size less a UDP header, when that stays positive."""
    return pkt_size - UDP_HEADER_SIZE if pkt_size - UDP_HEADER_SIZE > 0 else max(pkt_size, 0)


class UDPTracer:
    """Sends UDP datagrams with rising TTLs and collects the hops that answer."""

    icmp_network = "ip4:icmp"

    def __init__(self, config: Config) -> None:
        self.config = config
        self.res = Result()
        self._dest = ipaddress.ip_address(str(config.dest_ip))
        self._final = -1
        self._final_lock = threading.Lock()
        self._fetch_lock = threading.Lock()
        self._inflight: dict[int, queue.Queue] = {}
        self._inflight_lock = threading.Lock()
        self._stop = threading.Event()
        self._sem = threading.Semaphore(max(config.parallel_requests, 1))

    @property
    def final(self) -> int:
        """TTL at which the destination answered, or -1."""
        return self._final

    def execute(self) -> Result:
        """Run the trace once and return its result."""
        if self.res.hops:
            raise TracerouteExecutedError()

        with contextlib.ExitStack() as stack:
            icmp_sock = stack.enter_context(
                contextlib.closing(listen_icmp(self.icmp_network, self.config.src_addr))
            )
            self._final = -1
            self._stop.clear()
            with self._inflight_lock:
                self._inflight = {}
            listener = stack.enter_context(
                PacketListener(icmp_sock, strip_ipv4_header=True, read_timeout=READ_TIMEOUT)
            )
            stack.callback(self._stop.set)
            threading.Thread(target=self._receive, args=(listener,), daemon=True).start()
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
            for sender in senders:
                sender.join()

    def _async_print_loop(self) -> None:
        while not self._stop.is_set():
            self.config.async_printer(self.res)
            self._stop.wait(PRINT_INTERVAL)

    def _past_final(self, ttl: int) -> bool:
        return self._final != -1 and ttl > self._final

    def _is_destination(self, address) -> bool:
        try:
            return ipaddress.ip_address(str(address)) == self._dest
        except ValueError:
            return False

    def _open_udp(self):
        """Bind a UDP socket on the local address that routes to the destination."""
        src_ip, _ = local_ip_port(self._dest)
        host = "" if src_ip is None else str(src_ip)
        error: Optional[OSError] = None
        for _ in range(MAX_BIND_ATTEMPTS):
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind((host, 0))
            except OSError as exc:
                sock.close()
                error = exc
                continue
            return src_ip, sock.getsockname()[1], sock
        raise error

    def _send(self, ttl: int) -> None:
        with self._sem:
            try:
                self._probe(ttl)
            except (OSError, ValueError) as exc:
                _log.debug("UDP probe with TTL %d failed: %s", ttl, exc)

    def _probe(self, ttl: int) -> None:
        if self._past_final(ttl):
            return
        config = self.config
        _, src_port, sock = self._open_udp()
        with contextlib.closing(sock):
            payload = random.randbytes(_payload_size(config.pkt_size))
            packet = build_udp_datagram(sock.getsockname()[0], self._dest, src_port, config.dest_port, payload)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)

            replies: queue.Queue = queue.Queue(maxsize=1)
            with self._inflight_lock:
                self._inflight[src_port] = replies
            try:
                start = time.monotonic()
                sock.sendto(packet, (str(self._dest), config.dest_port))
                threading.Thread(target=self._read_reply, args=(sock, replies), daemon=True).start()
                try:
                    hop = replies.get(timeout=config.timeout)
                except queue.Empty:
                    if self._past_final(ttl):
                        return
                    self.res.add(Hop(success=False, ttl=ttl, error=HopTimeoutError()))
                    return
            finally:
                with self._inflight_lock:
                    if self._inflight.get(src_port) is replies:
                        del self._inflight[src_port]

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
                return
        self.res.add(hop)

    def _read_reply(self, sock, replies: queue.Queue) -> None:
        try:
            sock.settimeout(self.config.timeout)
            _, peer = sock.recvfrom(BUFFER_SIZE)
        except OSError:
            return
        try:
            replies.put_nowait(Hop(success=True, address=str(peer[0])))
        except queue.Full:
            pass

    def _receive(self, listener: PacketListener) -> None:
        while not self._stop.is_set():
            msg = listener.get(timeout=PRINT_INTERVAL)
            if msg is None or msg.n is None:
                continue
            self._handle_icmp(msg)

    def _handle_icmp(self, msg: ReceivedMessage) -> None:
        data = msg.msg[: msg.n]
        if len(data) < 8 or data[0] not in (ICMP_TIME_EXCEEDED, ICMP_DEST_UNREACHABLE):
            return
        try:
            port = udp_src_port(icmp_response_payload(data[8:]))
        except ValueError:
            return
        with self._inflight_lock:
            replies = self._inflight.get(port)
        if replies is None:
            return
        try:
            replies.put_nowait(Hop(success=True, address=msg.peer))
        except queue.Full:
            pass