import re

import pytest

from nexttrace.ipgeo import IPGeoData
from nexttrace.printer import (
    apply_lang_setting,
    easy_lines,
    realtime_printer,
    traceroute_nav,
    version_banner,
)
from nexttrace.trace import Hop, Result
from nexttrace.util import BUILD_DATE, COMMIT_ID, VERSION, settings

_ANSI = re.compile(r"\x1b\[[0-9;]*m")


def _plain(text):
    return _ANSI.sub("", text)


@pytest.fixture(autouse=True)
def _visible_destination(monkeypatch):
    monkeypatch.setattr(settings, "enable_hidden_dst_ip", "")
    monkeypatch.setattr(settings, "dest_ip", "")


def _result(*hops):
    result = Result()
    for hop in hops:
        result.add(hop)
    return result


def test_version_banner():
    assert _plain(version_banner()) == f"NextTrace {VERSION} {BUILD_DATE} {COMMIT_ID}"


def test_nav_for_ip_target():
    text = traceroute_nav("1.1.1.1", "1.1.1.1", "LeoMoeAPI", 30, 52)
    assert text.splitlines() == [
        "IP Geo Data Provider: LeoMoeAPI",
        "traceroute to 1.1.1.1, 30 hops max, 52 bytes payload",
    ]


def test_nav_for_domain_target():
    text = traceroute_nav("192.0.2.5", "example.com", "disable-geoip", 20, 60)
    assert text.splitlines()[1] == "traceroute to 192.0.2.5 (example.com), 20 hops max, 60 bytes payload"


def test_nav_hides_destination(monkeypatch):
    monkeypatch.setattr(settings, "enable_hidden_dst_ip", "1")
    text = traceroute_nav("1.1.1.1", "example.com", "LeoMoeAPI", 30, 52)
    assert text.splitlines()[1] == "traceroute to 1.1.0.0/16, 30 hops max, 52 bytes payload"


def test_lang_setting_uses_whois_when_country_missing():
    hop = Hop(address="10.0.0.1", geo=IPGeoData(whois="RFC1918"))
    apply_lang_setting(hop)
    assert hop.geo.country == "RFC1918"


def test_lang_setting_marks_network_error():
    hop = Hop(address="192.0.2.1", geo=IPGeoData())
    apply_lang_setting(hop)
    assert (hop.geo.country, hop.geo.country_en) == ("网络故障", "Network Error")


def test_lang_setting_marks_unknown_for_leomoe():
    hop = Hop(address="192.0.2.1", geo=IPGeoData(source="LeoMoeAPI"))
    apply_lang_setting(hop)
    assert (hop.geo.country, hop.geo.country_en) == ("未知", "Unknown")


def test_lang_setting_english_without_province():
    hop = Hop(address="192.0.2.1", lang="en", geo=IPGeoData(country="中国", country_en="China"))
    apply_lang_setting(hop)
    assert hop.geo.country == "China"


def test_lang_setting_english_backbone():
    hop = Hop(address="192.0.2.1", lang="en", geo=IPGeoData(country="中国", prov="骨干网", prov_en="x"))
    apply_lang_setting(hop)
    assert hop.geo.prov == "BackBone"


def test_lang_setting_english_with_city():
    geo = IPGeoData(country="中国", country_en="China", prov="广东", prov_en="Guangdong", city="广州", city_en="Guangzhou")
    hop = Hop(address="192.0.2.1", lang="en", geo=geo)
    apply_lang_setting(hop)
    assert (geo.country, geo.prov, geo.city) == ("Guangzhou", "Guangdong", "China")


def test_lang_setting_english_without_city():
    geo = IPGeoData(country="中国", country_en="China", prov="广东", prov_en="Guangdong", city="广州")
    hop = Hop(address="192.0.2.1", lang="en", geo=geo)
    apply_lang_setting(hop)
    assert (geo.country, geo.prov, geo.city) == ("Guangdong", "China", "")


def test_easy_lines_timeout():
    result = _result(Hop(ttl=1), Hop(ttl=2))
    assert easy_lines(result, 1) == ["2|*||||||"]


def test_easy_lines_answer():
    geo = IPGeoData(asnumber="13335", country="US", prov="California", owner="Cloudflare", lat=1.5, lng=-2.25)
    hop = Hop(success=True, address="1.1.1.1", hostname="one.one.one.one", ttl=1, rtt=0.0105, geo=geo)
    assert easy_lines(_result(hop), 0) == [
        "1|1.1.1.1|one.one.one.one|10.50|13335|US|California|||Cloudflare|1.5000|-2.2500"
    ]


def test_realtime_all_timeouts(capsys):
    realtime_printer(_result(Hop(ttl=1), Hop(ttl=1), Hop(ttl=1)), 0)
    assert _plain(capsys.readouterr().out) == "1   *\n"


def _answer(address, rtt, **geo):
    return Hop(success=True, address=address, ttl=1, rtt=rtt, geo=IPGeoData(**geo))


def test_realtime_groups_probes_of_one_address(capsys):
    result = _result(
        _answer("192.0.2.9", 0.01, asnumber="64500", country="US", whois="APNIC-AP-X"),
        _answer("192.0.2.9", 0.02, asnumber="64500", country="US", whois="APNIC-AP-X"),
        _answer("192.0.2.9", 0.03, asnumber="64500", country="US", whois="APNIC-AP-X"),
    )
    realtime_printer(result, 0)
    out = _plain(capsys.readouterr().out)
    assert "10.00 ms / 20.00 ms / 30.00 ms" in out
    assert "AS64500" in out
    assert "[APNIC-AP]" in out
    assert out.count("192.0.2.9") == 1


def test_realtime_leading_timeouts_shown(capsys):
    result = _result(Hop(ttl=1), _answer("192.0.2.9", 0.01, country="US"))
    realtime_printer(result, 0)
    assert "* ms / 10.00 ms" in _plain(capsys.readouterr().out)


def test_realtime_rfc_whois_hidden(capsys):
    result = _result(_answer("10.0.0.1", 0.01, whois="RFC1918"))
    realtime_printer(result, 0)
    out = _plain(capsys.readouterr().out)
    assert "[RFC" not in out
    assert "RFC1918" in out


def test_realtime_second_address_indented(capsys):
    result = _result(_answer("192.0.2.9", 0.01, country="US"), _answer("192.0.2.10", 0.02, country="US"))
    realtime_printer(result, 0)
    lines = _plain(capsys.readouterr().out).splitlines()
    second = [line for line in lines if "192.0.2.10" in line]
    assert len(second) == 1
    assert second[0].startswith("    192.0.2.10")


def test_realtime_prints_mpls(capsys):
    hop = _answer("192.0.2.9", 0.01, country="US")
    hop.mpls = ["[MPLS: Lbl 100, TC 0, S 1, TTL 1]"]
    realtime_printer(_result(hop), 0)
    assert "\n    [MPLS: Lbl 100, TC 0, S 1, TTL 1]" in _plain(capsys.readouterr().out)