"""Uploading a trace result to the map service."""

from __future__ import annotations

import http.client
import ipaddress

import requests
from termcolor import colored

from .latency import FALLBACK_HOST, _https_request, get_fast_ip
from .util import USER_AGENT, get_host_and_port, get_proxy

TIMEOUT = 5.0
_FAILURE = "an issue occurred while connecting to the tracemap API"


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def get_map_url(payload: str) -> str:
    """Post a JSON trace result and return the map URL the service answers with."""
    host, port = get_host_and_port()
    if _is_ip(host):
        fast_ip = f"[{host}]" if ":" in host else host
        host = FALLBACK_HOST
    else:
        fast_ip = get_fast_ip(host, port, False)

    headers = {"User-Agent": USER_AGENT, "Content-Type": "application/json"}
    body = payload.encode("utf-8")
    proxy = get_proxy()
    try:
        if proxy is not None:
            response = requests.post(
                f"https://{fast_ip}:{port}/tracemap/api",
                data=body,
                headers={**headers, "Host": host},
                proxies={"http": proxy, "https": proxy},
                timeout=TIMEOUT,
            )
            return response.text
        answer = _https_request(
            fast_ip, port, host, "POST", "/tracemap/api", body=body, headers=headers, timeout=TIMEOUT
        )
    except (OSError, ValueError, http.client.HTTPException, requests.RequestException) as exc:
        raise ConnectionError(_FAILURE) from exc
    return answer.decode("utf-8", "replace")


def print_map_url(url: str) -> None:
    print(colored("MapTrace URL:", "white", attrs=["bold"]), colored(url, "blue", attrs=["bold"]))