"""IP geolocation records and the providers that produce them."""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from .util import getenv_default

_log = logging.getLogger(__name__)


@dataclass
class IPGeoData:
    """Geolocation and ownership data for one address."""

    ip: str = ""
    asnumber: str = ""
    country: str = ""
    country_en: str = ""
    prov: str = ""
    prov_en: str = ""
    city: str = ""
    city_en: str = ""
    district: str = ""
    owner: str = ""
    isp: str = ""
    domain: str = ""
    whois: str = ""
    lat: float = 0.0
    lng: float = 0.0
    prefix: str = ""
    router: Optional[dict[str, list[str]]] = None
    source: str = ""

    def to_dict(self) -> dict:
        """Return the record as a JSON-ready dictionary."""
        return dataclasses.asdict(self)


Source = Callable[[str, float, str, bool], IPGeoData]

_PROVINCES = (
    "北京", "天津", "河北", "山西", "内蒙古", "辽宁", "吉林", "黑龙江", "上海", "江苏",
    "浙江", "安徽", "福建", "江西", "山东", "河南", "湖北", "湖南", "广东", "广西",
    "海南", "重庆", "四川", "贵州", "云南", "西藏", "陕西", "甘肃", "青海", "宁夏",
    "新疆", "台湾", "香港", "澳门",
)


def chunzhen(ip: str, timeout: float, lang: str, maptrace: bool) -> IPGeoData:
    """Query a local Chunzhen lookup service for ``ip``."""
    url = getenv_default("NEXTTRACE_CHUNZHENURL", "http://127.0.0.1:2060") + "?ip=" + ip
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException:
        _log.warning("纯真 请求超时(2s)，请切换其他API使用")
        raise
    data = json.loads(response.content)
    try:
        entry = data[ip]
        city = str(entry["area"])
        region = str(entry["country"])
    except (KeyError, TypeError) as exc:
        raise ValueError(f"no Chunzhen record for {ip}") from exc
    asn = entry.get("asn")
    asn = "" if asn is None else str(asn)

    if any(province in region for province in _PROVINCES):
        country = "中国"
        city = region + city
    else:
        country = region
    return IPGeoData(asnumber=asn, country=country, city=city)


def disable_geoip(ip: str, timeout: float, lang: str, maptrace: bool) -> IPGeoData:
    """Return an empty record; used when geolocation is switched off."""
    return IPGeoData()


_SOURCES: dict[str, Source] = {
    "CHUNZHEN": chunzhen,
    "DISABLE-GEOIP": disable_geoip,
}


def get_source(name: str) -> Source:
    """Return the geolocation provider called ``name`` (case-insensitive)."""
    try:
        return _SOURCES[name.upper()]
    except KeyError:
        raise ValueError(f"unsupported IP geolocation provider: {name}") from None