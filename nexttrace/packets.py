"""Small readers for fields inside quoted IP, UDP and TCP headers."""

from __future__ import annotations


def ip_header_length(data: bytes) -> int:
    """Return the IPv4 header length in bytes from its IHL field."""
    if len(data) < 1:
        raise ValueError("received invalid IP header")
    return (data[0] & 0x0F) * 4


def icmp_response_payload(data: bytes) -> bytes:
    """Return what follows the IP header quoted inside an ICMP error."""
    length = ip_header_length(data)
    if len(data) < length:
        raise ValueError("length of packet too short")
    return bytes(data[length:])


def udp_src_port(data: bytes) -> int:
    """Return the source port of a UDP header."""
    if len(data) < 2:
        raise ValueError("UDP header too short")
    return int.from_bytes(data[:2], "big")


def tcp_seq(data: bytes) -> int:
    """Return the sequence number of a TCP header."""
    if len(data) < 8:
        raise ValueError("TCP header too short")
    return int.from_bytes(data[4:8], "big")