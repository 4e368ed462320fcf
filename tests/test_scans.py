import asyncio

import httpx
import pytest

from database import Database
from scans import ScanContext, record_scan
from utils import LOCAL_LOCATION, UNKNOWN_LOCATION, get_location_from_ip, parse_device_info

IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Mobile/15E148 Safari/604.1"
IPAD = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
GALAXY = "Mozilla/5.0 (Linux; Android 14; SM-S918B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
PIXEL_TABLET = "Mozilla/5.0 (Linux; Android 13; Pixel Tablet) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
WINDOWS_EDGE = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0"
MAC_FIREFOX = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0"


# ============================================
# DEVICE INFO
# ============================================
@pytest.mark.parametrize(
    "user_agent, expected",
    [
        (IPHONE, ("Mobile", "iPhone", "Safari", "iOS")),
        (IPAD, ("Tablet", "iPad", "Safari", "iOS")),
        (GALAXY, ("Mobile", "Samsung Galaxy", "Chrome", "Android")),
        (PIXEL_TABLET, ("Tablet", "Google Pixel", "Chrome", "Android")),
        (WINDOWS_EDGE, ("Desktop", "Windows PC", "Edge", "Windows 10/11")),
        (MAC_FIREFOX, ("Desktop", "Mac", "Firefox", "macOS")),
    ],
)
def test_parse_device_info(user_agent, expected):
    info = parse_device_info(user_agent)
    assert (info["device_type"], info["device_name"], info["browser"], info["os"]) == expected


def test_parse_device_info_without_user_agent():
    for user_agent in (None, ""):
        assert parse_device_info(user_agent) == {
            "device_type": "Desktop",
            "device_name": "Unknown Device",
            "browser": "Unknown Browser",
            "os": "Unknown OS",
        }


# ============================================
# IP TO LOCATION
# ============================================
def test_location_of_local_and_invalid_addresses():
    assert asyncio.run(get_location_from_ip("127.0.0.1")) == LOCAL_LOCATION
    assert asyncio.run(get_location_from_ip("192.168.1.20")) == LOCAL_LOCATION
    assert asyncio.run(get_location_from_ip("testclient")) == UNKNOWN_LOCATION
    assert asyncio.run(get_location_from_ip(None)) == UNKNOWN_LOCATION


def test_location_lookup_timeout_falls_back_to_unknown(monkeypatch):
    calls = []

    async def timeout(self, url, **kwargs):
        calls.append(url)
        raise httpx.ConnectTimeout("timed out")

    monkeypatch.setattr(httpx.AsyncClient, "get", timeout)
    assert asyncio.run(get_location_from_ip("8.8.8.8", timeout=0.1)) == UNKNOWN_LOCATION
    assert calls == ["http://ip-api.com/json/8.8.8.8"]


def test_location_lookup_failure_status_falls_back_to_unknown(monkeypatch):
    async def failed(self, url, **kwargs):
        return httpx.Response(200, json={"status": "fail", "message": "reserved range"})

    monkeypatch.setattr(httpx.AsyncClient, "get", failed)
    assert asyncio.run(get_location_from_ip("8.8.8.8")) == UNKNOWN_LOCATION

    async def server_error(self, url, **kwargs):
        return httpx.Response(503)

    monkeypatch.setattr(httpx.AsyncClient, "get", server_error)
    assert asyncio.run(get_location_from_ip("8.8.8.8")) == UNKNOWN_LOCATION


def test_location_lookup_success(monkeypatch):
    async def found(self, url, **kwargs):
        return httpx.Response(
            200,
            json={"status": "success", "country": "Germany", "regionName": "Berlin", "city": "Berlin", "lat": 52.5, "lon": 13.4},
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", found)
    assert asyncio.run(get_location_from_ip("8.8.8.8")) == {
        "country": "Germany",
        "city": "Berlin",
        "region": "Berlin",
        "latitude": 52.5,
        "longitude": 13.4,
    }


# ============================================
# SCAN RECORDER
# ============================================
def test_record_scan_gives_up_quietly(settings):
    # Never initialized, so every attempt fails
    database = Database("sqlite+aiosqlite://")
    settings.SCAN_RECORD_RETRIES = 2
    context = ScanContext(ip_address="8.8.8.8", user_agent=IPHONE, referrer="Direct")

    assert asyncio.run(record_scan(database, settings, context, qr_code_id=1, profile_id=1)) is None
