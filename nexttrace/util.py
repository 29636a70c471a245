"""Runtime settings, environment helpers and address utilities."""

from __future__ import annotations

import ipaddress
import logging
import os
import platform
import socket
import threading
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from termcolor import colored

from .resolver import get_resolver

VERSION = "v0.0.0.alpha"
BUILD_DATE = ""
COMMIT_ID = ""

_ARCH_NAMES = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64", "i386": "386", "i686": "386"}

USER_AGENT = "NextTrace {}/{}/{}".format(
    VERSION,
    platform.system().lower(),
    _ARCH_NAMES.get(platform.machine().lower(), platform.machine().lower()),
)

_log = logging.getLogger(__name__)

_rdns_cache: dict[str, str] = {}
_rdns_lock = threading.Lock()


def getenv_default(key: str, default: str) -> str:
    """Return the environment variable ``key`` or ``default`` when it is unset."""
    value = os.environ.get(key)
    if value is None:
        return default
    if "NEXTTRACE_DEBUG" in os.environ:
        print("ENV", key, "detected as", value)
    return value


@dataclass
class RuntimeSettings:
    """Process-wide switches read from the environment and the command line."""

    uninterrupted: str = field(default_factory=lambda: getenv_default("NEXTTRACE_UNINTERRUPTED", ""))
    env_token: str = field(default_factory=lambda: getenv_default("NEXTTRACE_TOKEN", ""))
    user_agent: str = USER_AGENT
    pow_provider_param: str = ""
    disable_mpls: str = field(default_factory=lambda: getenv_default("NEXTTRACE_DISABLEMPLS", ""))
    enable_hidden_dst_ip: str = field(
        default_factory=lambda: getenv_default("NEXTTRACE_ENABLEHIDDENDSTIP", "")
    )
    dest_ip: str = ""


settings = RuntimeSettings()


def lookup_addr(addr: str) -> list[str]:
    """Reverse-resolve ``addr`` to absolute host names, caching the first answer."""
    with _rdns_lock:
        cached = _rdns_cache.get(addr)
    if cached is not None:
        return [cached]
    name, aliases, _ = socket.gethostbyaddr(addr)
    names = [n if n.endswith(".") else n + "." for n in [name, *aliases] if n]
    if names:
        with _rdns_lock:
            _rdns_cache[addr] = names[0]
    return names


def _probe_local(address, family):
    try:
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.connect((str(address), 12345))
            host, port = sock.getsockname()[:2]
    except OSError:
        return None, -1
    return ipaddress.ip_address(str(host).split("%", 1)[0]), port


def local_ip_port(dest_ip):
    """Return the local IPv4 address and port the system would use to reach ``dest_ip``."""
    try:
        address = ipaddress.IPv4Address(str(dest_ip))
    except ValueError as exc:
        raise ValueError(f"invalid IPv4 destination: {dest_ip}") from exc
    return _probe_local(address, socket.AF_INET)


def local_ip_port_v6(dest_ip):
    """Return the local address and port the system would use to reach ``dest_ip``."""
    try:
        address = ipaddress.ip_address(str(dest_ip))
    except ValueError as exc:
        raise ValueError(f"invalid destination: {dest_ip}") from exc
    family = socket.AF_INET6 if address.version == 6 else socket.AF_INET
    return _probe_local(address, family)


def domain_lookup(host: str, ip_version: str, dot_server: str, disable_output: bool):
    """Resolve ``host`` to one address, asking the user to choose when several are found.

    ``ip_version`` is "4", "6" or "all".
    """
    resolver = get_resolver(dot_server)
    try:
        found = resolver.lookup_host(host)
    except LookupError as exc:
        raise LookupError("DNS lookup failed") from exc
    ips = [ipaddress.ip_address(v.split("%", 1)[0]) for v in found]

    if ip_version != "all":
        chosen = []
        for ip in ips:
            if ip_version == "4" and ip.version == 4:
                chosen = [ip]
                break
            if ip_version == "6" and ":" in str(ip):
                chosen = [ip]
                break
        ips = chosen

    if not ips:
        raise LookupError(f"no IPv{ip_version} address found for {host}")
    if len(ips) == 1 or disable_output:
        return ips[0]

    print("Please Choose the IP You Want To TraceRoute")
    for number, ip in enumerate(ips):
        print(
            colored(f"{number}.", "light_yellow", attrs=["bold"]),
            colored(str(ip), "white", attrs=["bold"]),
        )
    try:
        index = int(input("Your Option: ").strip())
    except (ValueError, EOFError):
        index = 0
    if not 0 <= index < len(ips):
        print("Your Option is invalid")
        raise SystemExit(3)
    return ips[index]


def get_host_and_port() -> tuple[str, str]:
    """Return the API host and port from NEXTTRACE_HOSTPORT, defaulting the port to 443."""
    host_port = getenv_default("NEXTTRACE_HOSTPORT", "origin-fallback.nxtrace.org")
    port = ""
    parts = host_port.split(":")
    if len(parts) > 1:
        if host_port.startswith("["):
            bracketed, _, rest = host_port.partition("]")
            host = bracketed[1:]
            port = rest[1:] if rest else ""
        else:
            host, port = parts[0], parts[1]
    else:
        host = host_port
    return host, port or "443"


def get_proxy() -> str | None:
    """Return the proxy URL from NEXTTRACE_PROXY, or None when unset or malformed."""
    proxy = getenv_default("NEXTTRACE_PROXY", "")
    if not proxy:
        return None
    try:
        urlsplit(proxy)
    except ValueError as exc:
        _log.warning("Failed to parse proxy URL: %s", exc)
        return None
    return proxy


def get_pow_provider() -> str:
    """Return the proof-of-work host to use, or an empty string for the default one."""
    provider = settings.pow_provider_param or getenv_default("NEXTTRACE_POWPROVIDER", "api.nxtrace.org")
    if provider == "sakura":
        return "pow.nexttrace.owo.13a.com"
    return ""


def hide_ip_part(ip: str) -> str:
    """Mask an address: IPv4 to its /16, IPv6 to its /32; empty string when invalid."""
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return ""
    if parsed.version == 4 or parsed.ipv4_mapped is not None:
        return ".".join(ip.split(".")[:2]) + ".0.0/16"
    network = ipaddress.ip_network(f"{parsed}/32", strict=False)
    return f"{network.network_address}/32"