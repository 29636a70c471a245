"""Choosing and running the tracer for a method and destination."""

from __future__ import annotations

import dataclasses
import errno
import ipaddress

from .icmp_tracer import ICMPTracer, ICMPTracerV6
from .tcp_tracer import TCPTracer, TCPTracerV6
from .trace import Config, InvalidMethodError, Method, Result, TraceError
from .udp_tracer import UDPTracer


def _apply_defaults(config: Config) -> Config:
    """Return a copy of ``config`` with zero counts replaced by their defaults."""
    max_hops = config.max_hops or 30
    num_measurements = config.num_measurements or 3
    parallel = config.parallel_requests or num_measurements * 5
    return dataclasses.replace(
        config, max_hops=max_hops, num_measurements=num_measurements, parallel_requests=parallel
    )


def _is_ipv4(address) -> bool:
    parsed = ipaddress.ip_address(str(address))
    return parsed.version == 4 or parsed.ipv4_mapped is not None


def _select_tracer(method, config: Config):
    try:
        method = Method(method)
    except ValueError:
        raise InvalidMethodError() from None
    ipv4 = _is_ipv4(config.dest_ip)
    if method is Method.ICMP:
        return ICMPTracer(config) if ipv4 else ICMPTracerV6(config)
    if method is Method.UDP:
        if not ipv4:
            raise TraceError("IPv6 UDP Traceroute is not supported")
        return UDPTracer(config)
    return TCPTracer(config) if ipv4 else TCPTracerV6(config)


def traceroute(method, config: Config) -> Result:
    """Trace the route to ``config.dest_ip`` with ``method`` and return the hops found."""
    tracer = _select_tracer(method, _apply_defaults(config))
    try:
        return tracer.execute()
    except PermissionError as exc:
        if exc.errno != errno.EPERM:
            raise
        raise PermissionError(exc.errno, f"{exc.strerror or exc}, please run as root") from exc