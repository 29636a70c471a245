"""Host name resolution through the system resolver or DNS-over-TLS servers."""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass

import dns.exception
import dns.message
import dns.query
import dns.rdatatype

DOT_TIMEOUT = 1.0

_DOT_SERVERS = {
    "dnssb": ("45.11.45.11", "dot.sb:853"),
    "aliyun": ("dns.alidns.com", "dns.alidns.com:853"),
    "dnspod": ("dot.pub", "dot.pub:853"),
    "google": ("dns.google", "dns.google:853"),
    "cloudflare": ("one.one.one.one", "one.one.one.one:853"),
}


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class SystemResolver:
    """Resolves names with the operating system's resolver."""

    def lookup_host(self, host: str) -> list[str]:
        """Return the addresses of ``host``; raise LookupError when there are none."""
        if _is_ip(host):
            return [host]
        try:
            infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        except (OSError, UnicodeError) as exc:
            raise LookupError(f"lookup {host}: {exc}") from exc
        addresses: list[str] = []
        for *_, sockaddr in infos:
            address = str(sockaddr[0]).split("%", 1)[0]
            if address not in addresses:
                addresses.append(address)
        if not addresses:
            raise LookupError(f"lookup {host}: no such host")
        return addresses


@dataclass(frozen=True)
class DoTResolver:
    """Resolves names by querying a DNS-over-TLS server."""

    server_name: str
    address: str
    timeout: float = DOT_TIMEOUT

    def _endpoint(self) -> tuple[str, int]:
        host, _, port = self.address.rpartition(":")
        host = host.strip("[]")
        port_number = int(port)
        if not _is_ip(host):
            infos = socket.getaddrinfo(host, port_number, proto=socket.IPPROTO_TCP)
            host = str(infos[0][4][0])
        return host, port_number

    def lookup_host(self, host: str) -> list[str]:
        """Return the A and AAAA addresses of ``host``; raise LookupError when there are none."""
        if _is_ip(host):
            return [host]
        try:
            where, port = self._endpoint()
        except (OSError, ValueError, IndexError) as exc:
            raise LookupError(f"cannot reach DoT server {self.address}: {exc}") from exc

        addresses: list[str] = []
        failures: list[Exception] = []
        for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            query = dns.message.make_query(host, rdtype)
            try:
                response = dns.query.tls(
                    query,
                    where,
                    timeout=self.timeout,
                    port=port,
                    server_hostname=self.server_name,
                )
            except (dns.exception.DNSException, OSError, ValueError) as exc:
                failures.append(exc)
                continue
            for rrset in response.answer:
                if rrset.rdtype == rdtype:
                    addresses.extend(rdata.address for rdata in rrset)
        if not addresses:
            reason = failures[0] if failures else "no such host"
            raise LookupError(f"lookup {host}: {reason}")
        return addresses


def get_resolver(name: str | None) -> DoTResolver | SystemResolver:
    """Return the DoT resolver called ``name``, or the system resolver for any other name."""
    try:
        server_name, address = _DOT_SERVERS[name]
    except KeyError:
        return SystemResolver()
    return DoTResolver(server_name, address)