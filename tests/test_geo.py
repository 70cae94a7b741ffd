"""Tests for best-effort geolocation."""

import asyncio

import httpx
import pytest

from authkernel.service.geo import GeoLocator, GeoPoint, _is_private_ip

IP_URL = "http://geo.test/json/{ip}?fields=status,country,regionName,city"
REVERSE_URL = "http://reverse.test/reverse"


def _locator(handler, **kwargs):
    return GeoLocator(
        ip_lookup_url=IP_URL,
        reverse_lookup_url=REVERSE_URL,
        timeout_seconds=kwargs.pop("timeout_seconds", 1.0),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestIpLookup:
    async def test_public_ip_resolves(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "city": "Mountain View",
                    "regionName": "California",
                    "country": "United States",
                },
            )

        location = await _locator(handler).locate("8.8.8.8")
        assert location == "Mountain View, California, United States"
        assert seen == ["/json/8.8.8.8"]

    async def test_failed_status_is_unknown(self):
        def handler(request):
            return httpx.Response(200, json={"status": "fail", "message": "reserved range"})

        assert await _locator(handler).locate("8.8.8.8") is None

    async def test_private_ip_is_not_looked_up(self):
        def handler(request):
            raise AssertionError("private addresses must not be sent out")

        locator = _locator(handler)
        assert await locator.locate("10.0.0.4") is None
        assert await locator.locate("127.0.0.1") is None
        assert await locator.locate("testclient") is None
        assert await locator.locate(None) is None

    async def test_http_error_degrades_to_unknown(self):
        def handler(request):
            return httpx.Response(503)

        assert await _locator(handler).locate("8.8.8.8") is None

    async def test_timeout_degrades_to_unknown(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"status": "success", "city": "Late"})

        assert await _locator(handler, timeout_seconds=0.05).locate("8.8.8.8") is None

    async def test_disabled_never_calls_out(self):
        def handler(request):
            raise AssertionError("disabled locator must not call out")

        assert await _locator(handler, enabled=False).locate("8.8.8.8") is None


class TestReverseLookup:
    async def test_gps_point_wins_over_ip(self):
        def handler(request):
            assert request.url.host == "reverse.test"
            assert request.url.params["lat"] == "52.52"
            return httpx.Response(
                200,
                json={"address": {"city": "Berlin", "state": "Berlin", "country": "Germany"}},
            )

        location = await _locator(handler).locate("8.8.8.8", GeoPoint(52.52, 13.405))
        assert location == "Berlin, Berlin, Germany"

    async def test_reverse_failure_falls_back_to_coordinates(self):
        def handler(request):
            raise httpx.ConnectError("offline")

        location = await _locator(handler).locate(None, GeoPoint(52.52, 13.405))
        assert location == "52.5200, 13.4050"


@pytest.mark.parametrize(
    "ip,private",
    [("192.168.1.1", True), ("::1", True), ("169.254.0.1", True), ("1.1.1.1", False)],
)
def test_private_ranges(ip, private):
    assert _is_private_ip(ip) is private
