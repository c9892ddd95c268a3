"""Unit tests for auth/device.py -- DeviceContext parsing.

Covers:
- user-agent classification (mobile, tablet, Postman, cURL, desktop)
- IP precedence: X-Forwarded-For first entry -> X-Real-IP -> peer address
- "Unknown" defaults when nothing is available
- from_request() on a real Starlette Request
"""

import pytest
from starlette.requests import Request

from auth.device import DeviceContext, classify_device, extract_ip


@pytest.mark.parametrize(
    "ua,expected",
    [
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", "Mobile Device"),
        ("Mozilla/5.0 (Linux; Android 13; Tablet)", "Tablet"),
        ("PostmanRuntime/7.36.0", "Postman"),
        ("curl/8.4.0", "cURL"),
        ("Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0", "Desktop"),
        (None, "Unknown Device"),
        ("", "Unknown Device"),
    ],
)
def test_classify_device(ua, expected):
    assert classify_device(ua) == expected


def test_forwarded_for_first_entry_wins():
    headers = {"x-forwarded-for": " 203.0.113.7 , 10.0.0.2", "x-real-ip": "198.51.100.1"}
    assert extract_ip(headers, "127.0.0.1") == "203.0.113.7"


def test_real_ip_then_peer():
    assert extract_ip({"x-real-ip": "198.51.100.1"}, "127.0.0.1") == "198.51.100.1"
    assert extract_ip({}, "127.0.0.1") == "127.0.0.1"
    assert extract_ip({"x-forwarded-for": " "}, None) == "Unknown IP"


def test_from_headers_case_insensitive():
    ctx = DeviceContext.from_headers({"User-Agent": "curl/8.4.0", "X-Real-IP": "198.51.100.1"})
    assert ctx == DeviceContext(device_info="cURL", ip_address="198.51.100.1", user_agent="curl/8.4.0")


def test_defaults():
    assert DeviceContext.from_headers(None) == DeviceContext()
    assert DeviceContext.from_request(None) == DeviceContext()
    assert DeviceContext().user_agent == "Unknown"


def test_from_request():
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/login",
        "headers": [(b"user-agent", b"PostmanRuntime/7.36.0"), (b"x-forwarded-for", b"203.0.113.9")],
        "client": ("10.1.1.1", 50000),
    }
    ctx = DeviceContext.from_request(Request(scope))
    assert ctx.device_info == "Postman"
    assert ctx.ip_address == "203.0.113.9"
