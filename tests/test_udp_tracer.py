import ipaddress
import queue
import socket
import struct

import pytest

from nexttrace.listener import ReceivedMessage
from nexttrace.tcp_tracer import checksum
from nexttrace.trace import Config, Hop, TracerouteExecutedError
from nexttrace.udp_tracer import UDPTracer, _payload_size, build_udp_datagram


def _pseudo(src, dst, length):
    return (
        ipaddress.ip_address(src).packed
        + ipaddress.ip_address(dst).packed
        + struct.pack("!BBH", 0, socket.IPPROTO_UDP, length)
    )


def test_datagram_header_fields():
    payload = b"abcdef"
    datagram = build_udp_datagram("192.0.2.10", "198.51.100.1", 40000, 33494, payload)
    src_port, dst_port, length, _ = struct.unpack("!HHHH", datagram[:8])
    assert (src_port, dst_port) == (40000, 33494)
    assert length == len(datagram) == 8 + len(payload)
    assert datagram[8:] == payload


def test_datagram_checksum_verifies():
    datagram = build_udp_datagram("192.0.2.10", "198.51.100.1", 1234, 80, b"\x01\x02\x03")
    assert checksum(_pseudo("192.0.2.10", "198.51.100.1", len(datagram)) + datagram) == 0


def test_datagram_checksum_is_never_zero():
    datagram = build_udp_datagram("192.0.2.10", "198.51.100.1", 1, 2, bytes(10))
    (value,) = struct.unpack("!H", datagram[6:8])
    assert 0 < value <= 0xFFFF
    assert checksum(_pseudo("192.0.2.10", "198.51.100.1", len(datagram)) + datagram) == 0


def test_datagram_rejects_bad_port():
    with pytest.raises(ValueError):
        build_udp_datagram("192.0.2.10", "198.51.100.1", 70000, 80)


def test_datagram_rejects_mixed_families():
    with pytest.raises(ValueError):
        build_udp_datagram("192.0.2.10", "2001:db8::1", 1, 2)


@pytest.mark.parametrize("size, expected", [(52, 44), (9, 1), (8, 8), (5, 5)])
def test_payload_size(size, expected):
    assert _payload_size(size) == expected


def test_execute_twice_raises():
    tracer = UDPTracer(Config(dest_ip="192.0.2.1"))
    tracer.res.add(Hop(ttl=1))
    with pytest.raises(TracerouteExecutedError):
        tracer.execute()


def _time_exceeded(src_port, kind=11):
    quoted_ip = bytes([0x45]) + bytes(19)
    quoted_udp = struct.pack("!HHHH", src_port, 33494, 8, 0)
    return bytes([kind, 0, 0, 0, 0, 0, 0, 0]) + quoted_ip + quoted_udp


def test_icmp_reply_delivered_by_source_port():
    tracer = UDPTracer(Config(dest_ip="192.0.2.1"))
    replies = queue.Queue(maxsize=1)
    tracer._inflight[40000] = replies
    data = _time_exceeded(40000)
    tracer._handle_icmp(ReceivedMessage(n=len(data), peer="198.51.100.7", msg=data))
    hop = replies.get_nowait()
    assert hop.success is True
    assert hop.address == "198.51.100.7"


def test_icmp_reply_for_unknown_port_ignored():
    tracer = UDPTracer(Config(dest_ip="192.0.2.1"))
    replies = queue.Queue(maxsize=1)
    tracer._inflight[40000] = replies
    data = _time_exceeded(40001)
    tracer._handle_icmp(ReceivedMessage(n=len(data), peer="198.51.100.7", msg=data))
    assert replies.empty()


def test_echo_reply_ignored():
    tracer = UDPTracer(Config(dest_ip="192.0.2.1"))
    replies = queue.Queue(maxsize=1)
    tracer._inflight[40000] = replies
    data = _time_exceeded(40000, kind=0)
    tracer._handle_icmp(ReceivedMessage(n=len(data), peer="198.51.100.7", msg=data))
    assert replies.empty()


def test_open_udp_binds_reported_port():
    tracer = UDPTracer(Config(dest_ip="127.0.0.1"))
    _, port, sock = tracer._open_udp()
    with sock:
        assert sock.getsockname()[1] == port
        assert port > 0


def test_final_starts_unset():
    assert UDPTracer(Config(dest_ip="192.0.2.1")).final == -1