import socket
from unittest import mock

import dns.exception
import dns.message
import dns.rdatatype
import dns.rrset
import pytest

from nexttrace.resolver import DoTResolver, SystemResolver, get_resolver


def _fake_tls(calls):
    def fake(query, where, **kwargs):
        calls.append((where, kwargs))
        question = query.question[0]
        response = dns.message.make_response(query)
        text = "192.0.2.10" if question.rdtype == dns.rdatatype.A else "2001:db8::10"
        response.answer.append(
            dns.rrset.from_text(question.name, 60, "IN", dns.rdatatype.to_text(question.rdtype), text)
        )
        return response

    return fake


@pytest.mark.parametrize(
    "name, server_name, address",
    [
        ("google", "dns.google", "dns.google:853"),
        ("cloudflare", "one.one.one.one", "one.one.one.one:853"),
        ("dnssb", "45.11.45.11", "dot.sb:853"),
        ("aliyun", "dns.alidns.com", "dns.alidns.com:853"),
        ("dnspod", "dot.pub", "dot.pub:853"),
    ],
)
def test_get_resolver_known_servers(name, server_name, address):
    resolver = get_resolver(name)
    assert resolver == DoTResolver(server_name, address)


@pytest.mark.parametrize("name", ["", None, "unknown"])
def test_get_resolver_falls_back_to_system(name):
    assert get_resolver(name) == SystemResolver()


def test_ip_literals_are_returned_unchanged():
    assert SystemResolver().lookup_host("127.0.0.1") == ["127.0.0.1"]
    assert DoTResolver("dns.example", "192.0.2.53:853").lookup_host("::1") == ["::1"]


def test_system_resolver_collects_unique_addresses():
    infos = [
        (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("192.0.2.1", 0)),
        (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("192.0.2.1", 0)),
        (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("2001:db8::1", 0, 0, 0)),
    ]
    with mock.patch("socket.getaddrinfo", return_value=infos):
        assert SystemResolver().lookup_host("host.example") == ["192.0.2.1", "2001:db8::1"]


def test_system_resolver_failure_raises_lookup_error():
    with mock.patch("socket.getaddrinfo", side_effect=socket.gaierror("no name")):
        with pytest.raises(LookupError):
            SystemResolver().lookup_host("missing.example")


def test_dot_resolver_queries_both_families():
    calls = []
    with mock.patch("dns.query.tls", side_effect=_fake_tls(calls)):
        result = DoTResolver("dns.example", "192.0.2.53:853").lookup_host("host.example")
    assert result == ["192.0.2.10", "2001:db8::10"]
    assert len(calls) == 2
    assert all(where == "192.0.2.53" for where, _ in calls)
    assert all(kwargs["server_hostname"] == "dns.example" for _, kwargs in calls)
    assert all(kwargs["port"] == 853 for _, kwargs in calls)


def test_dot_resolver_failure_raises_lookup_error():
    with mock.patch("dns.query.tls", side_effect=dns.exception.Timeout()):
        with pytest.raises(LookupError):
            DoTResolver("dns.example", "192.0.2.53:853").lookup_host("host.example")