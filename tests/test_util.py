import ipaddress
import socket
from unittest import mock

import pytest

from nexttrace import util
from nexttrace.util import (
    RuntimeSettings,
    domain_lookup,
    get_host_and_port,
    get_pow_provider,
    get_proxy,
    getenv_default,
    hide_ip_part,
    local_ip_port,
    local_ip_port_v6,
    lookup_addr,
)

MULTI = [
    (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("192.0.2.1", 0)),
    (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("2001:db8::1", 0, 0, 0)),
]


def test_getenv_default(monkeypatch, capsys):
    monkeypatch.delenv("NEXTTRACE_TESTVAR", raising=False)
    assert getenv_default("NEXTTRACE_TESTVAR", "fallback") == "fallback"
    monkeypatch.setenv("NEXTTRACE_TESTVAR", "set")
    monkeypatch.setenv("NEXTTRACE_DEBUG", "1")
    assert getenv_default("NEXTTRACE_TESTVAR", "fallback") == "set"
    assert "ENV NEXTTRACE_TESTVAR detected as set" in capsys.readouterr().out


def test_runtime_settings_read_environment(monkeypatch):
    monkeypatch.setenv("NEXTTRACE_DISABLEMPLS", "1")
    monkeypatch.delenv("NEXTTRACE_ENABLEHIDDENDSTIP", raising=False)
    current = RuntimeSettings()
    assert current.disable_mpls == "1"
    assert current.enable_hidden_dst_ip == ""
    assert current.user_agent.startswith("NextTrace " + util.VERSION)


def test_lookup_addr_caches_first_name():
    with mock.patch("socket.gethostbyaddr", return_value=("host.example", [], ["192.0.2.7"])):
        assert lookup_addr("192.0.2.7") == ["host.example."]
    with mock.patch("socket.gethostbyaddr", side_effect=socket.herror("gone")):
        assert lookup_addr("192.0.2.7") == ["host.example."]


def test_lookup_addr_error_propagates():
    with mock.patch("socket.gethostbyaddr", side_effect=socket.herror("none")):
        with pytest.raises(OSError):
            lookup_addr("192.0.2.99")


def test_local_ip_port_loopback():
    ip, port = local_ip_port("127.0.0.1")
    assert ip == ipaddress.ip_address("127.0.0.1")
    assert port > 0


def test_local_ip_port_rejects_bad_input():
    with pytest.raises(ValueError):
        local_ip_port("::1")
    with pytest.raises(ValueError):
        local_ip_port_v6("not-an-ip")


def test_domain_lookup_literal():
    assert domain_lookup("127.0.0.1", "all", "", True) == ipaddress.ip_address("127.0.0.1")


def test_domain_lookup_family_filter():
    with mock.patch("socket.getaddrinfo", return_value=MULTI):
        assert domain_lookup("multi.example", "6", "", False) == ipaddress.ip_address("2001:db8::1")
        assert domain_lookup("multi.example", "4", "", False) == ipaddress.ip_address("192.0.2.1")
        assert domain_lookup("multi.example", "all", "", True) == ipaddress.ip_address("192.0.2.1")


def test_domain_lookup_missing_family():
    with pytest.raises(LookupError):
        domain_lookup("127.0.0.1", "6", "", True)


def test_domain_lookup_failure():
    with mock.patch("socket.getaddrinfo", side_effect=socket.gaierror("no")):
        with pytest.raises(LookupError, match="DNS lookup failed"):
            domain_lookup("missing.example", "all", "", True)


def test_domain_lookup_interactive_choice(capsys):
    with mock.patch("socket.getaddrinfo", return_value=MULTI), mock.patch("builtins.input", return_value="1"):
        assert domain_lookup("multi.example", "all", "", False) == ipaddress.ip_address("2001:db8::1")
    assert "Please Choose the IP You Want To TraceRoute" in capsys.readouterr().out


def test_domain_lookup_unparsable_choice_uses_first():
    with mock.patch("socket.getaddrinfo", return_value=MULTI), mock.patch("builtins.input", return_value="abc"):
        assert domain_lookup("multi.example", "all", "", False) == ipaddress.ip_address("192.0.2.1")


def test_domain_lookup_invalid_choice_exits():
    with mock.patch("socket.getaddrinfo", return_value=MULTI), mock.patch("builtins.input", return_value="7"):
        with pytest.raises(SystemExit) as info:
            domain_lookup("multi.example", "all", "", False)
    assert info.value.code == 3


@pytest.mark.parametrize(
    "value, expected",
    [
        ("[::1]:8443", ("::1", "8443")),
        ("[::1]", ("::1", "443")),
        ("api.example.com:8080", ("api.example.com", "8080")),
        ("api.example.com", ("api.example.com", "443")),
    ],
)
def test_get_host_and_port(monkeypatch, value, expected):
    monkeypatch.setenv("NEXTTRACE_HOSTPORT", value)
    assert get_host_and_port() == expected


def test_get_host_and_port_default(monkeypatch):
    monkeypatch.delenv("NEXTTRACE_HOSTPORT", raising=False)
    assert get_host_and_port() == ("origin-fallback.nxtrace.org", "443")


def test_get_proxy(monkeypatch):
    monkeypatch.delenv("NEXTTRACE_PROXY", raising=False)
    assert get_proxy() is None
    monkeypatch.setenv("NEXTTRACE_PROXY", "http://proxy.example.com:3128")
    assert get_proxy() == "http://proxy.example.com:3128"
    monkeypatch.setenv("NEXTTRACE_PROXY", "http://[broken")
    assert get_proxy() is None


def test_get_pow_provider(monkeypatch):
    monkeypatch.delenv("NEXTTRACE_POWPROVIDER", raising=False)
    monkeypatch.setattr(util.settings, "pow_provider_param", "")
    assert get_pow_provider() == ""
    monkeypatch.setattr(util.settings, "pow_provider_param", "sakura")
    assert get_pow_provider() == "pow.nexttrace.owo.13a.com"


def test_hide_ip_part():
    assert hide_ip_part("1.2.3.4") == "1.2.0.0/16"
    assert hide_ip_part("2001:db8:1:2::1") == "2001:db8::/32"
    assert hide_ip_part("bogus") == ""