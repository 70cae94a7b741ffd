from __future__ import annotations

import asyncio
import ipaddress
from dataclasses import dataclass
from typing import Optional

import httpx

from authkernel.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def label(self) -> str:
        return f"{self.latitude:.4f}, {self.longitude:.4f}"


def _is_private_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        # Unparseable addresses (e.g. "testclient") are treated as local
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved


def _join_parts(*parts: Optional[str]) -> Optional[str]:
    cleaned = [p.strip() for p in parts if isinstance(p, str) and p.strip()]
    return ", ".join(cleaned) or None


class GeoLocator:
    """Best-effort location labels for session logs.

    Every lookup is bounded by ``timeout_seconds`` and any failure resolves to
    ``None`` (unknown location). GPS coordinates supplied by the client win
    over IP lookups.
    """

    def __init__(
        self,
        *,
        ip_lookup_url: str,
        reverse_lookup_url: str,
        timeout_seconds: float = 2.0,
        enabled: bool = True,
        user_agent: str = "authkernel-geolocation",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.ip_lookup_url = ip_lookup_url
        self.reverse_lookup_url = reverse_lookup_url
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            headers=self._headers,
            follow_redirects=False,
            transport=self._transport,
        )

    async def locate(
        self, ip: Optional[str], point: Optional[GeoPoint] = None
    ) -> Optional[str]:
        if not self.enabled:
            return point.label() if point else None
        try:
            return await asyncio.wait_for(
                self._resolve(ip, point), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.info("geolocation_timeout", timeout=self.timeout_seconds)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning("geolocation_failed", error=str(exc))
        return point.label() if point else None

    async def _resolve(self, ip: Optional[str], point: Optional[GeoPoint]) -> Optional[str]:
        if point is not None:
            return await self._reverse_lookup(point) or point.label()
        if not ip or _is_private_ip(ip):
            return None
        return await self._ip_lookup(ip)

    async def _ip_lookup(self, ip: str) -> Optional[str]:
        async with self._client() as client:
            response = await client.get(self.ip_lookup_url.format(ip=ip))
            response.raise_for_status()
            data = response.json()
        if data.get("status") not in (None, "success"):
            return None
        return _join_parts(data.get("city"), data.get("regionName"), data.get("country"))

    async def _reverse_lookup(self, point: GeoPoint) -> Optional[str]:
        async with self._client() as client:
            response = await client.get(
                self.reverse_lookup_url,
                params={
                    "format": "jsonv2",
                    "lat": point.latitude,
                    "lon": point.longitude,
                    "zoom": 10,
                },
            )
            response.raise_for_status()
            data = response.json()
        address = data.get("address") or {}
        city = address.get("city") or address.get("town") or address.get("village")
        return _join_parts(city, address.get("state"), address.get("country")) or data.get(
            "display_name"
        )
