"""Choosing the fastest-answering address of the API host."""

from __future__ import annotations

import http.client
import logging
import queue
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Optional

from termcolor import colored

from .util import get_proxy

TIMEOUT = 5.0
FALLBACK_HOST = "origin-fallback.nxtrace.org"
FALLBACK_IP = "45.88.195.154"

_log = logging.getLogger(__name__)
_cache: dict[str, str] = {}


@dataclass(frozen=True)
class ResponseInfo:
    ip: str
    latency: str
    content: str


def _https_request(
    address: str,
    port: str,
    server_name: str,
    method: str,
    path: str,
    *,
    body: Optional[bytes] = None,
    headers: Optional[dict[str, str]] = None,
    timeout: float = TIMEOUT,
) -> bytes:
    """Send one HTTPS request to ``address`` while presenting ``server_name`` for TLS and Host."""
    context = ssl.create_default_context()
    with socket.create_connection((address.strip("[]"), int(port)), timeout=timeout) as raw:
        with context.wrap_socket(raw, server_hostname=server_name) as tls:
            conn = http.client.HTTPConnection(server_name, int(port), timeout=timeout)
            conn.sock = tls
            conn.request(method, path, body=body, headers={"Host": server_name, **(headers or {})})
            return conn.getresponse().read()


def check_latency(domain: str, ip: str, port: str) -> Optional[ResponseInfo]:
    """Fetch ``/`` from ``ip`` as ``domain`` and time it; None when it fails."""
    start = time.monotonic()
    if "." not in ip:
        ip = f"[{ip}]"
    try:
        body = _https_request(ip, port, domain, "GET", "/")
    except (OSError, ValueError, http.client.HTTPException):
        return None
    latency = f"{(time.monotonic() - start) * 1000:.2f}"
    return ResponseInfo(ip=ip, latency=latency, content=body.decode("utf-8", "replace"))


def get_fast_ip(domain: str, port: str, enable_output: bool) -> str:
    """Return the address of ``domain`` that answers first, remembering it for later calls."""
    if get_proxy() is not None:
        return FALLBACK_HOST
    if "ip" in _cache:
        return _cache["ip"]

    lookup = "api.nxtrace.org" if domain == FALLBACK_HOST else domain
    try:
        infos = socket.getaddrinfo(lookup, None, proto=socket.IPPROTO_TCP)
    except OSError as exc:
        raise LookupError("DNS resolution failed, please check your system DNS Settings") from exc
    ips: list[str] = []
    for *_, sockaddr in infos:
        address = str(sockaddr[0]).split("%", 1)[0]
        if address not in ips:
            ips.append(address)
    if not ips:
        ips.append(FALLBACK_IP)

    answers: queue.Queue = queue.Queue()
    for ip in ips:
        threading.Thread(
            target=lambda target=ip: answers.put(check_latency(domain, target, port)),
            daemon=True,
        ).start()

    result = ResponseInfo("", "", "")
    deadline = time.monotonic() + TIMEOUT
    for _ in ips:
        remaining = deadline - time.monotonic()
        try:
            answer = answers.get(timeout=max(remaining, 0))
        except queue.Empty:
            _log.warning("IP connection has been timeout, please check your network")
            break
        if answer is not None:
            result = answer
            break

    if enable_output:
        print(
            colored("[NextTrace API]", "white", attrs=["bold"]),
            "preferred API IP -",
            colored(result.ip, "green", attrs=["bold"]),
            "-",
            colored(f"{result.latency}ms", "cyan", attrs=["bold"]),
            "-",
            colored(result.content, "green", attrs=["bold"]),
            end="",
        )

    ip = result.ip or FALLBACK_IP
    _cache["ip"] = ip
    return ip