"""Command-line entry point of the traceroute tool."""

from __future__ import annotations

import argparse
import contextlib
import io
import ipaddress
import json
import os
import re
import socket
import struct
import sys
from typing import Iterable, Optional

from .hopformat import print_hop
from .ipgeo import get_source
from .printer import easy_printer, print_traceroute_nav, print_version, realtime_printer
from .reporter import Reporter
from .table_printer import traceroute_table_printer
from .trace import Config, Method, Result, TraceError
from .tracemap import get_map_url, print_map_url
from .traceroute import traceroute
from .util import domain_lookup, getenv_default, settings

DATA_PROVIDERS = [
    "Ip2region", "ip2region", "IP.SB", "ip.sb", "IPInfo", "ipinfo", "IPInsight", "ipinsight",
    "IPAPI.com", "ip-api.com", "IPInfoLocal", "ipinfolocal", "chunzhen", "LeoMoeAPI", "leomoeapi",
    "disable-geoip",
]
POW_PROVIDERS = ["api.nxtrace.org", "sakura"]
DOT_SERVERS = ["dnssb", "aliyun", "dnspod", "google", "cloudflare"]
LANGUAGES = ["en", "cn"]
MAP_PROVIDERS = frozenset({"LEOMOEAPI", "IPINFO", "IP-API.COM", "IPAPI.COM"})
TRACE_LOG = "/tmp/trace.log"
DEFAULT_TCP_PORT = 80
DEFAULT_UDP_PORT = 33494

CAP_NET_ADMIN = 12
CAP_NET_RAW = 13
SIOCGIFADDR = 0x8915

_ANSI = re.compile(r"\x1b\[[0-9;]*m")
_PRIVATE = [ipaddress.ip_network(n) for n in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "fc00::/7")]
_LINK_LOCAL_MULTICAST = [ipaddress.ip_network(n) for n in ("224.0.0.0/24", "ff02::/16")]

_CAPABILITY_HINT = (
    "您正在以普通用户权限运行 NextTrace，但 NextTrace 未被赋予监听网络套接字的ICMP消息包、修改IP头信息（TTL）等路由跟踪所需的权限\n"
    "请使用管理员用户执行 `sudo setcap cap_net_raw,cap_net_admin+eip ${your_nexttrace_path}/nexttrace` 命令，赋予相关权限后再运行~\n"
    "什么？为什么 ping 普通用户执行不要 root 权限？因为这些工具在管理员安装时就已经被赋予了一些必要的权限，具体请使用 `getcap /usr/bin/ping` 查看"
)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the command."""
    p = argparse.ArgumentParser(prog="nexttrace", description="An open source visual route tracking CLI tool")
    flag = lambda short, long, text: p.add_argument(*(s for s in (short, long) if s), action="store_true", help=text)
    flag("-4", "--ipv4", "Use IPv4 only")
    flag("-6", "--ipv6", "Use IPv6 only")
    flag("-T", "--tcp", "Use TCP SYN for tracerouting (default port is 80)")
    flag("-U", "--udp", "Use UDP SYN for tracerouting (default port is 33494)")
    p.add_argument("-p", "--port", type=int, default=0,
                   help='Set the destination port to use. With default of 80 for "tcp", 33494 for "udp"')
    p.add_argument("-q", "--queries", type=int, default=3, help="Set the number of probes per each hop")
    p.add_argument("--parallel-requests", type=int, default=18,
                   help="Set ParallelRequests number. It should be 1 when there is a multi-routing")
    p.add_argument("-m", "--max-hops", type=int, default=30, help="Set the max number of hops (max TTL to be reached)")
    p.add_argument("-d", "--data-provider", choices=DATA_PROVIDERS, default="LeoMoeAPI",
                   help="Choose IP Geograph Data Provider [IP.SB, IPInfo, IPInsight, IP-API.com, Ip2region, "
                        "IPInfoLocal, CHUNZHEN, disable-geoip]")
    p.add_argument("--pow-provider", choices=POW_PROVIDERS, default="api.nxtrace.org",
                   help="Choose PoW Provider [api.nxtrace.org, sakura] For China mainland users, please use sakura")
    flag("-n", "--no-rdns", "Do not resolve IP addresses to their domain names")
    flag("-a", "--always-rdns", "Always resolve IP addresses to their domain names")
    flag("-P", "--route-path", "Print traceroute hop path by ASN and location")
    flag("-r", "--report", "output using report mode")
    flag(None, "--dn42", "DN42 Mode")
    flag("-o", "--output", "Write trace result to file (RealTimePrinter ONLY)")
    flag("-t", "--table", "Output trace results as table")
    flag(None, "--raw", "An Output Easy to Parse")
    flag("-j", "--json", "Output trace results as JSON")
    flag("-c", "--classic", "Classic Output trace results like BestTrace")
    p.add_argument("-f", "--first", type=int, default=1, help="Start from the first_ttl hop (instead from 1)")
    flag("-M", "--map", "Disable Print Trace Map")
    flag("-e", "--disable-mpls", "Disable MPLS")
    flag("-v", "--version", "Print version info and exit")
    p.add_argument("-s", "--source", default="", help="Use source src_addr for outgoing packets")
    p.add_argument("-D", "--dev", default="",
                   help="Use the following Network Devices as the source address in outgoing packets")
    p.add_argument("-z", "--send-time", type=int, default=50,
                   help="Set how many [milliseconds] between sending each packet.")
    p.add_argument("-i", "--ttl-time", type=int, default=50,
                   help="Set how many [milliseconds] between sending packets groups by TTL.")
    p.add_argument("--timeout", type=int, default=1000,
                   help="The number of [milliseconds] to keep probe sockets open before giving up on the connection.")
    p.add_argument("--psize", type=int, default=52, help="Set the payload size")
    p.add_argument("target", nargs="?", default="", help="IP Address or domain name")
    p.add_argument("--dot-server", choices=DOT_SERVERS, default=None,
                   help="Use DoT Server for DNS Parse [dnssb, aliyun, dnspod, google, cloudflare]")
    p.add_argument("-g", "--language", choices=LANGUAGES, default="cn", help="Choose the language for displaying [en, cn]")
    flag("-C", "--nocolor", "Disable Colorful Output")
    flag(None, "--dont-fragment", "Set the Don't Fragment bit (IPv4 TCP only)")
    return p


def normalize_target(target: str) -> str:
    """Reduce a URL or host[:port] to the bare host; raise ValueError if it cannot be read."""
    domain = target
    if "/" in domain:
        parts = domain.split("/")
        if len(parts) < 3:
            raise ValueError("Invalid input")
        domain = parts[2]
    if "]" in domain:
        head = domain.split("]")[0].split("[")
        if len(head) < 2:
            raise ValueError("Invalid input")
        domain = head[1]
    elif domain.count(":") == 1:
        domain = domain.split(":")[0]
    return domain


def _has_net_capabilities(status: str) -> bool:
    for line in status.splitlines():
        if line.startswith("CapEff:"):
            try:
                mask = int(line.split(":", 1)[1].strip(), 16)
            except ValueError:
                return False
            return bool(mask >> CAP_NET_RAW & 1) and bool(mask >> CAP_NET_ADMIN & 1)
    return False


def _capabilities_check() -> None:
    if sys.platform == "win32" or os.getuid() == 0:
        return
    try:
        with open("/proc/self/status", encoding="utf-8") as fh:
            status = fh.read()
    except OSError as exc:
        if sys.platform != "darwin":
            print(exc)
        return
    if not _has_net_capabilities(status):
        print(_CAPABILITY_HINT)


def _is_internal(ip) -> bool:
    return (
        ip.is_loopback
        or ip.is_link_local
        or any(ip in net for net in _PRIVATE if net.version == ip.version)
        or any(ip in net for net in _LINK_LOCAL_MULTICAST if net.version == ip.version)
    )


def _pick_source_address(addresses: Iterable[str], want_ipv4: bool, current: str) -> str:
    """Prefer the first public address of the wanted family, else the last one of that family."""
    chosen = current
    for text in addresses:
        ip = ipaddress.ip_address(text)
        if (ip.version == 4) != want_ipv4:
            continue
        chosen = str(ip)
        if not _is_internal(ip):
            break
    return chosen


def _interface_addresses(name: str) -> list[str]:
    addresses: list[str] = []
    try:
        import fcntl

        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            packed = fcntl.ioctl(sock.fileno(), SIOCGIFADDR, struct.pack("256s", name[:15].encode()))
        addresses.append(socket.inet_ntoa(packed[20:24]))
    except (ImportError, OSError):
        pass
    try:
        with open("/proc/net/if_inet6", encoding="ascii") as fh:
            for line in fh:
                fields = line.split()
                if len(fields) >= 6 and fields[5] == name:
                    addresses.append(str(ipaddress.IPv6Address(bytes.fromhex(fields[0]))))
    except OSError:
        pass
    return addresses


def _classic_printer(result: Result, ttl: int) -> None:
    print(ttl + 1, end="")
    for hop in result.hops[ttl]:
        print_hop(hop)


def _logging_printer(result: Result, ttl: int) -> None:
    buffer = io.StringIO()
    with contextlib.redirect_stdout(buffer):
        realtime_printer(result, ttl)
    text = buffer.getvalue()
    sys.stdout.write(text)
    try:
        with open(TRACE_LOG, "a", encoding="utf-8") as fh:
            fh.write(_ANSI.sub("", text))
    except OSError:
        pass


def _lookup_version(args) -> str:
    if args.udp or args.ipv4:
        return "4"
    return "6" if args.ipv6 else "all"


def main(argv: Optional[list[str]] = None) -> int:
    """Run the command; return the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.nocolor:
        os.environ["NO_COLOR"] = "1"
    if not args.json:
        print_version()
    if args.version:
        return 0

    port = args.port or DEFAULT_TCP_PORT
    if not args.target:
        print(parser.format_help(), end="")
        return 0
    try:
        domain = normalize_target(args.target)
    except ValueError:
        print("Invalid input")
        return 0

    _capabilities_check()

    if sys.platform == "win32" and (args.tcp or args.udp):
        print("NextTrace 基于 Windows 的路由跟踪还在早期开发阶段，目前还存在诸多问题，TCP/UDP SYN 包请求可能不能正常运行")

    data_origin = args.data_provider
    disable_map = args.map
    if args.dn42:
        data_origin = "DN42"
        disable_map = True

    if data_origin.upper() == "LEOMOEAPI":
        if args.pow_provider.upper() != "API.NXTRACE.ORG":
            settings.pow_provider_param = args.pow_provider
        provider = os.environ.get("NEXTTRACE_DATAPROVIDER")
        if provider is not None:
            data_origin = provider

    if args.udp and args.ipv6:
        print("[Info] IPv6 UDP Traceroute is not supported right now.")
        return 0
    try:
        ip = domain_lookup(domain, _lookup_version(args), args.dot_server or "", args.json)
    except Exception as exc:  # the resolver reports failures in several ways
        print(exc)
        return 1
    dest = ipaddress.ip_address(str(ip))

    src_addr = args.source
    if args.dev:
        src_addr = _pick_source_address(_interface_addresses(args.dev), dest.version == 4, src_addr)

    if not args.json:
        print_traceroute_nav(dest, domain, data_origin, args.max_hops, args.psize)

    method = Method.TCP if args.tcp else Method.UDP if args.udp else Method.ICMP
    if not args.tcp and port == DEFAULT_TCP_PORT:
        port = DEFAULT_UDP_PORT

    settings.dest_ip = str(dest)
    config = Config(
        dn42=args.dn42,
        src_addr=src_addr,
        begin_hop=args.first,
        dest_ip=dest,
        dest_port=port,
        max_hops=args.max_hops,
        packet_interval=args.send_time,
        ttl_interval=args.ttl_time,
        num_measurements=args.queries,
        parallel_requests=args.parallel_requests,
        lang=args.language,
        rdns=not args.no_rdns,
        always_wait_rdns=args.always_rdns,
        ip_geo_source=get_source(data_origin),
        timeout=args.timeout / 1000,
        pkt_size=args.psize,
        dont_fragment=args.dont_fragment,
    )

    if not args.table:
        if args.classic:
            config.realtime_printer = _classic_printer
        elif args.raw:
            config.realtime_printer = easy_printer
        elif args.output:
            config.realtime_printer = _logging_printer
        else:
            config.realtime_printer = realtime_printer
    elif not args.report:
        config.async_printer = traceroute_table_printer

    if args.json:
        config.realtime_printer = None
        config.async_printer = None

    if getenv_default("NEXTTRACE_UNINTERRUPTED", "") and args.raw:
        while True:
            try:
                traceroute(method, config)
            except (OSError, TraceError) as exc:
                print(exc)

    if args.disable_mpls:
        settings.disable_mpls = "1"

    try:
        res = traceroute(method, config)
    except (OSError, TraceError) as exc:
        print(exc, file=sys.stderr)
        return 1

    if args.table:
        traceroute_table_printer(res)
    if args.route_path:
        Reporter(res, str(dest)).print()

    if not disable_map and data_origin.upper() in MAP_PROVIDERS:
        try:
            url = get_map_url(json.dumps(res.to_dict(), ensure_ascii=False, separators=(",", ":")))
        except Exception as exc:  # any failure of the map service ends the run
            print(exc, file=sys.stderr)
            return 1
        res.trace_map_url = url
        if not args.json:
            print_map_url(url)

    if args.json:
        print(json.dumps(res.to_dict(), ensure_ascii=False, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    sys.exit(main())