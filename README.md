# nexttrace

`nexttrace` traces the route packets take to a host and shows, for every hop,
its address, reverse-DNS name, round-trip times, AS number, whois tag,
location and owner. Probes are sent as ICMP echo requests, TCP SYN segments
or UDP datagrams, over IPv4 or IPv6 (UDP over IPv4 only). MPLS label stacks
carried in ICMP extensions of the replies are decoded and printed under the
hop that reported them. Reserved and special-purpose addresses (RFC 1918,
RFC 6598, documentation prefixes, multicast and the like) are labelled
without asking any lookup service.

## Installation

```
pip install .
```

Probes go out through raw sockets, so the command must run as root or with
the `cap_net_raw` and `cap_net_admin` capabilities. When run as an ordinary
user without them, it prints a hint about granting them.

## Usage

```
nexttrace -d disable-geoip example.com
```

The geolocation providers that work are `chunzhen` (a local lookup service,
see `NEXTTRACE_CHUNZHENURL`) and `disable-geoip`. The parser accepts the other
names listed under `-d` too, and `LeoMoeAPI` is its default, but choosing any
of them ends the command with a `ValueError`; pass `-d` explicitly, or set
`NEXTTRACE_DATAPROVIDER=disable-geoip` so that the default is replaced.

Options:

| Option | Meaning |
| --- | --- |
| `-4`, `-6` | Resolve the target to an IPv4 or IPv6 address only |
| `-T`, `--tcp` | Trace with TCP SYN (default port 80) |
| `-U`, `--udp` | Trace with UDP (default port 33494, IPv4 only) |
| `-p`, `--port` | Destination port |
| `-q`, `--queries` | Probes per hop (default 3) |
| `--parallel-requests` | Probes in flight at once for TCP and UDP (default 18) |
| `-m`, `--max-hops` | Maximum TTL (default 30) |
| `-f`, `--first` | First TTL to probe (default 1) |
| `-z`, `--send-time` | Milliseconds between probes (default 50) |
| `-i`, `--ttl-time` | Milliseconds between TTL groups (default 50) |
| `--timeout` | Milliseconds to wait for each reply (default 1000) |
| `--psize` | Payload size in bytes (default 52) |
| `-s`, `--source` | Source address for outgoing packets |
| `-D`, `--dev` | Take the source address from a network device, preferring a public one |
| `-d`, `--data-provider` | IP geolocation provider: `chunzhen` or `disable-geoip` |
| `-n`, `--no-rdns` | Do not resolve hop addresses to names |
| `-a`, `--always-rdns` | Wait up to one second for each reverse-DNS answer |
| `--dot-server` | Resolve the target over DNS-over-TLS: `dnssb`, `aliyun`, `dnspod`, `google`, `cloudflare` |
| `-c`, `--classic` | Print one tab-indented line per probe |
| `--raw` | Print one pipe-separated line per probe, easy to parse |
| `-o`, `--output` | Print as usual and append the output, without colours, to `/tmp/trace.log` |
| `-t`, `--table` | Print the result as a table; with `-r`, only once at the end |
| `-r`, `--report` | With `-t`, do not redraw the table while tracing |
| `-j`, `--json` | Print the whole result as JSON and nothing else |
| `-P`, `--route-path` | Summarise the path by AS number and location |
| `-e`, `--disable-mpls` | Do not decode MPLS labels |
| `--dont-fragment` | Accepted and stored in the trace settings |
| `--pow-provider` | `api.nxtrace.org` or `sakura`; stored in the runtime settings |
| `-M`, `--map` | Do not request a trace map link |
| `--dn42` | DN42 mode (see below) |
| `-g`, `--language` | Display language, `en` or `cn` (default `cn`) |
| `-C`, `--nocolor` | Disable coloured output |
| `-v`, `--version` | Print the version banner and exit |

The target may be an address, a host name or a URL. The host part of a URL
and the address inside `[...]` brackets are taken out before resolving, and
a `:port` suffix on a host name is ignored. When a name resolves to several
addresses, the command asks which one to trace (unless `-j` is given, in
which case the first is used).

Examples:

```
nexttrace -d disable-geoip -T -p 443 example.com
nexttrace -d disable-geoip -6 -q 5 example.com
nexttrace -d disable-geoip --raw 192.0.2.1
nexttrace -d chunzhen -j -n example.com
```

The `--raw` lines have the form

```
TTL|address|hostname|rtt_ms|asn|country|prov|city|district|owner|lat|lng
```

and a probe that got no answer prints `TTL|*||||||`.

## Environment variables

| Variable | Effect |
| --- | --- |
| `NEXTTRACE_DATAPROVIDER` | Replaces the provider when `-d` is left at `LeoMoeAPI` |
| `NEXTTRACE_CHUNZHENURL` | Base URL of the chunzhen lookup service (default `http://127.0.0.1:2060`) |
| `NEXTTRACE_DISABLEMPLS` | Any value turns MPLS decoding off |
| `NEXTTRACE_ENABLEHIDDENDSTIP` | Any value masks the destination address (to its /16 or /32) in output |
| `NEXTTRACE_UNINTERRUPTED` | With `--raw`, trace again and again without stopping |
| `NEXTTRACE_HOSTPORT` | Host and port used by `nexttrace.tracemap.get_map_url` (default port 443) |
| `NEXTTRACE_PROXY` | Proxy URL used by `get_map_url` |
| `NEXTTRACE_POWPROVIDER` | Read by `nexttrace.util.get_pow_provider` |
| `NEXTTRACE_DEBUG` | Report which of these variables were picked up |

## Library use

- `nexttrace.traceroute.traceroute(method, config)` runs a trace and returns a
  `nexttrace.trace.Result` whose `hops[ttl - 1]` holds the probes of each TTL.
  `Result.to_dict()` gives the JSON-ready form.
- `nexttrace.trace.Config` carries the trace settings (timeouts in seconds,
  intervals in milliseconds); `nexttrace.trace.Method` chooses `ICMP`, `TCP`
  or `UDP`. Errors derive from `nexttrace.trace.TraceError`.
- `nexttrace.ipfilter.filter_ip(ip)` returns an `IPGeoData` naming the RFC
  that reserves an address, or `None` for a routable one.
- `nexttrace.ipgeo.get_source(name)` returns the `chunzhen` or
  `disable_geoip` lookup function.
- `nexttrace.resolver.get_resolver(name)` returns a `DoTResolver` or the
  `SystemResolver`; `nexttrace.util.domain_lookup` resolves a target.
- `nexttrace.reporter.Reporter(result, target_ip).render()` returns the
  route-path summary as text.
- `nexttrace.table_printer.table_rows(result)` and
  `traceroute_table_printer(result)` render a result as a table;
  `nexttrace.printer` holds the per-hop printers.
- `nexttrace.tracemap.get_map_url(payload)` posts a JSON result to the map
  service named by `NEXTTRACE_HOSTPORT` and returns its answer.
- Packet helpers: `nexttrace.icmp_tracer.generate_id` / `reverse_id` /
  `build_echo_request`, `nexttrace.tcp_tracer.build_tcp_syn`,
  `nexttrace.udp_tracer.build_udp_datagram` and `nexttrace.trace.extract_mpls`.

## What it does not do

- Geolocation comes only from the chunzhen service or not at all; there is no
  built-in online or database-backed provider. For the same reason the
  command never reaches the point of requesting a trace map link, so `-M`
  has no visible effect.
- `--dn42` switches to a `DN42` provider that is not included, so the command
  stops with a `ValueError` in that mode.
- There is no one-key fast-trace mode and no reading of targets from a file.
- IPv6 UDP tracing is not supported.

## Tests

```
pip install .[test]
pytest
```