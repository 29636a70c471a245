from nexttrace.ipgeo import IPGeoData
from nexttrace.table_printer import table_rows, traceroute_table_printer
from nexttrace.trace import Hop, Result


def _result(*groups):
    result = Result()
    for group in groups:
        for hop in group:
            result.add(hop)
    return result


def test_timed_out_probe_row():
    rows = table_rows(_result([Hop(ttl=1)]))
    assert rows == [("1", "*", "", "", "", "")]


def test_lan_prefix_row():
    hop = Hop(success=True, address="9.1.2.3", ttl=2, rtt=0.0125, geo=IPGeoData(asnumber="4134"))
    rows = table_rows(_result([hop]))
    assert rows == [("2", "9.1.2.3", "12.50ms", "", "LAN Address", "")]


def test_hostname_city_and_isp_fallback():
    geo = IPGeoData(asnumber="2497", country_en="Japan", prov_en="Tokyo", city_en="Chiyoda", isp="ExampleNet")
    hop = Hop(success=True, address="203.0.113.5", hostname="edge.example.com", ttl=1, geo=geo)
    (row,) = table_rows(_result([hop]))
    assert row[1] == "edge.example.com (203.0.113.5) "
    assert row[3] == "2497"
    assert row[4] == "Chiyoda, Tokyo, Japan"
    assert row[5] == "ExampleNet"


def test_location_without_city_or_province():
    prov_only = Hop(success=True, address="203.0.113.6", ttl=1,
                    geo=IPGeoData(country_en="Germany", prov_en="Hesse", owner="Carrier"))
    country_only = Hop(success=True, address="203.0.113.7", ttl=2,
                       geo=IPGeoData(country_en="Germany"))
    no_geo = Hop(success=True, address="203.0.113.8", ttl=3)
    rows = table_rows(_result([prov_only], [country_only], [no_geo]))
    assert [row[4] for row in rows] == ["Hesse, Germany", "Germany", ""]
    assert rows[0][5] == "Carrier"


def test_only_first_probe_of_a_group_shows_hop_number():
    hops = [Hop(ttl=3), Hop(ttl=3), Hop(ttl=3)]
    rows = table_rows(_result(hops))
    assert [row[0] for row in rows] == ["3", "", ""]
    assert all(row[1] == "*" for row in rows)


def test_printer_clears_screen_and_lists_rows(capsys):
    hop = Hop(success=True, address="198.51.100.20", ttl=1, geo=IPGeoData(asnumber="64500"))
    traceroute_table_printer(_result([hop]))
    out = capsys.readouterr().out
    assert out.startswith("\033[H\033[2J")
    assert "Lantency" in out
    assert "198.51.100.20" in out
    assert "64500" in out