from nexttrace.hopformat import format_hop, format_ip_geo_data, print_hop
from nexttrace.ipgeo import IPGeoData
from nexttrace.trace import Hop


def test_unknown_country_is_lan():
    assert format_ip_geo_data("1.2.3.4", IPGeoData()) == "*, LAN Address"


def test_cloud_internal_prefixes_are_lan():
    text = format_ip_geo_data("9.1.2.3", IPGeoData(asnumber="1", country="China"))
    assert text == "AS1, LAN Address, "
    assert format_ip_geo_data("11.0.0.1", IPGeoData(country="China")).startswith("*, LAN Address")


def test_backbone_repeats_owner_instead_of_country():
    data = IPGeoData(asnumber="13335", country="Anycast", isp="Cloudflare")
    assert format_ip_geo_data("1.1.1.1", data) == "AS13335, Cloudflare, Cloudflare"


def test_full_location_order():
    data = IPGeoData(asnumber="2497", country="Japan", prov="Tokyo", city="Tokyo", district="Minato", owner="IIJ")
    parts = format_ip_geo_data("202.232.0.1", data).split(", ")
    assert parts == ["AS2497", "Japan", "Tokyo", "Tokyo", "Minato", "IIJ"]


def test_data_is_not_modified():
    data = IPGeoData(country="Japan", city="Osaka", district="Kita", isp="KDDI")
    format_ip_geo_data("1.2.3.4", data)
    assert data.city == "Osaka"
    assert data.owner == ""


def test_timed_out_hop():
    assert format_hop(Hop()) == "\t*"


def test_hop_without_hostname():
    line = format_hop(Hop(success=True, address="1.1.1.1", rtt=0.01234))
    assert line == "\t1.1.1.1 12.34ms"


def test_hop_with_hostname_and_geo():
    hop = Hop(success=True, address="1.1.1.1", hostname="one.one", rtt=0.001, geo=IPGeoData())
    line = format_hop(hop)
    assert line.startswith("\tone.one (1.1.1.1) ")
    assert line.endswith("*, LAN Address")


def test_print_hop(capsys):
    print_hop(Hop())
    assert capsys.readouterr().out == "\t*\n"