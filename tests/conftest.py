"""Pytest configuration and shared fixtures."""

import asyncio
import uuid
from typing import Dict, List, Optional, Sequence

import pytest
import httpx

from relay_locator.main import app
from relay_locator.models.relay import Coordinate, ServerInstance, ServerLocation
from relay_locator.routers.relays import get_catalog
from relay_locator.services.catalog_service import (
    InMemoryCatalog,
    close_http_client,
    create_http_client,
)
from relay_locator.services.probe_service import ProbeResult, ReachabilityProbe, get_probe


SUPABASE_URL = "http://supabase.test"
MULLVAD_URL = "http://relays.test/wireguard/"

PARIS = Coordinate(latitude=48.8566, longitude=2.3522)


class FakeProbe(ReachabilityProbe):
    """Probe answering from a fixed host -> latency table instead of the network."""

    def __init__(self, latencies: Optional[Dict[str, float]] = None, delay: float = 0.0):
        super().__init__(ports=[443, 80], timeout_ms=1000)
        self.latencies = latencies or {}
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def probe_detailed(
        self,
        host: str,
        ports: Optional[Sequence[int]] = None,
        timeout_ms: Optional[int] = None,
    ) -> ProbeResult:
        self.calls.append(host)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        latency = self.latencies.get(host)
        if latency is None:
            return ProbeResult(host=host, latency_ms=None, port=None, status="timeout")
        return ProbeResult(host=host, latency_ms=latency, port=443, status="success")


def make_location(city, city_code, country, country_code, lat=None, lon=None, **kwargs):
    coordinate = None if lat is None else Coordinate(latitude=lat, longitude=lon)
    return ServerLocation(
        city_name=city,
        city_code=city_code,
        country_name=country,
        country_code=country_code,
        coordinate=coordinate,
        **kwargs,
    )


def make_server(hostname, city_code, country_code, ipv4=None, **kwargs):
    return ServerInstance(
        hostname=hostname,
        city_code=city_code,
        country_code=country_code,
        ipv4=ipv4,
        **kwargs,
    )


@pytest.fixture
def locations() -> List[ServerLocation]:
    return [
        make_location("Stockholm", "sto", "Sweden", "se", 59.3293, 18.0686,
                      server_count=2, provider="31173", speed_gbps=10, owned=True),
        make_location("Amsterdam", "ams", "Netherlands", "nl", 52.3676, 4.9041,
                      server_count=1, provider="M247", speed_gbps=10),
        make_location("London", "lon", "UK", "gb", 51.5074, -0.1278,
                      server_count=2, provider="M247", speed_gbps=10),
        make_location("New York, NY", "nyc", "USA", "us", 40.7128, -74.0060,
                      server_count=1, provider="xtom", speed_gbps=10),
        make_location("Tokyo", "tyo", "Japan", "jp", 35.6762, 139.6503,
                      server_count=1, provider="M247", speed_gbps=10),
        make_location("Sydney", "syd", "Australia", "au", -33.8688, 151.2093,
                      server_count=0),
        make_location("Atlantis", "atl", "Nowhere", "xx", server_count=1),
    ]


@pytest.fixture
def servers() -> List[ServerInstance]:
    return [
        make_server("se-sto-wg-001", "sto", "se", "10.0.0.1"),
        make_server("se-sto-wg-002", "sto", "se", "10.0.0.2"),
        make_server("nl-ams-wg-001", "ams", "nl", "10.0.1.1"),
        make_server("gb-lon-wg-001", "lon", "gb", "10.0.2.1", ipv6="2a03:1b20::1"),
        make_server("gb-lon-wg-002", "lon", "gb", None),
        make_server("us-nyc-wg-001", "nyc", "us", "10.0.3.1"),
        make_server("jp-tyo-wg-001", "tyo", "jp", "10.0.4.1"),
        make_server("xx-atl-wg-001", "atl", "xx", "10.0.9.1"),
    ]


@pytest.fixture
def catalog(locations, servers) -> InMemoryCatalog:
    return InMemoryCatalog(locations, servers)


@pytest.fixture
def blocked_probe() -> FakeProbe:
    """Every probe fails, as on a network that filters the probe ports."""
    return FakeProbe()


@pytest.fixture
def partial_probe() -> FakeProbe:
    """Stockholm, London and New York answer; everything else is silent."""
    return FakeProbe(
        {
            "10.0.0.1": 30.0,
            "10.0.0.2": 15.0,
            "10.0.2.1": 40.0,
            "10.0.3.1": 90.0,
            "10.0.9.1": 1.0,
        }
    )


@pytest.fixture
async def setup_http_client():
    """Setup and teardown the shared HTTP client."""
    await create_http_client()
    yield
    await close_http_client()


@pytest.fixture
async def test_client(catalog, partial_probe):
    """
    Test client for the FastAPI app wired to the in-memory catalog and fake probe.

    Every client gets its own X-Forwarded-For so probe rate limits do not
    carry over between tests.
    """
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_probe] = lambda: partial_probe

    await create_http_client()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Forwarded-For": f"client-{uuid.uuid4().hex}"},
    ) as client:
        yield client
    await close_http_client()

    app.dependency_overrides.clear()


@pytest.fixture
def mock_location_rows():
    """PostgREST rows for server_locations with embedded cities."""
    return [
        {
            "id": 1,
            "city_name": "Amsterdam",
            "city_code": "ams",
            "country_name": "Netherlands",
            "country_code": "nl",
            "server_count": 3,
            "provider": "M247",
            "speed": 10,
            "owned": False,
            "cities": {"latitude": 52.3676, "longitude": 4.9041},
        },
        {
            "id": 2,
            "city_name": "Stockholm",
            "city_code": "sto",
            "country_name": "Sweden",
            "country_code": "se",
            "server_count": 2,
            "provider": "31173",
            "speed": 10,
            "owned": True,
            "cities": {"latitude": None, "longitude": 18.0686},
        },
        {
            "id": 3,
            "city_name": "Gothenburg",
            "city_code": "got",
            "country_name": "Sweden",
            "country_code": "se",
            "server_count": 1,
            "provider": "31173",
            "speed": None,
            "owned": True,
            "cities": {"latitude": 257.7, "longitude": 11.97},
        },
    ]


@pytest.fixture
def mock_server_rows():
    """PostgREST rows for servers."""
    return [
        {
            "hostname": "nl-ams-wg-001",
            "city_code": "ams",
            "country_code": "nl",
            "ipv4_addr_in": "185.65.134.66",
            "ipv6_addr_in": "2a03:1b20:3:f011::a01f",
            "network_port_speed": 10,
            "provider": "M247",
            "owned": False,
        },
        {
            "hostname": "nl-ams-wg-002",
            "city_code": "ams",
            "country_code": "nl",
            "ipv4_addr_in": "185.65.134.67",
            "ipv6_addr_in": None,
            "network_port_speed": 10,
            "provider": "M247",
            "owned": None,
        },
    ]


@pytest.fixture
def mock_relay_feed():
    """Relay feed entries as published by the upstream provider."""
    return [
        {
            "hostname": "se-sto-wg-001",
            "country_code": "se",
            "country_name": "Sweden",
            "city_code": "sto",
            "city_name": "Stockholm",
            "active": True,
            "owned": True,
            "provider": "31173",
            "ipv4_addr_in": "185.195.233.76",
            "ipv6_addr_in": "2a03:1b20:4:f011::a01f",
            "network_port_speed": 10,
            "socks_name": "se-sto-wg-socks5-001.relays.mullvad.net",
        },
        {
            "hostname": "se-sto-wg-002",
            "country_code": "se",
            "country_name": "Sweden",
            "city_code": "sto",
            "city_name": "Stockholm",
            "active": True,
            "owned": False,
            "provider": "DataPacket",
            "ipv4_addr_in": "185.195.233.77",
            "ipv6_addr_in": None,
            "network_port_speed": 20,
        },
        {
            "hostname": "se-got-wg-001",
            "country_code": "se",
            "country_name": "Sweden",
            "city_code": "got",
            "city_name": "Gothenburg",
            "active": False,
            "owned": True,
            "provider": "31173",
            "ipv4_addr_in": "185.213.154.66",
            "network_port_speed": 10,
        },
        {
            "hostname": "nl-ams-wg-001",
            "country_code": "nl",
            "country_name": "Netherlands",
            "city_code": "ams",
            "city_name": "Amsterdam",
            "active": True,
            "owned": False,
            "provider": "M247",
            "ipv4_addr_in": "185.65.134.66",
            "network_port_speed": 10,
        },
    ]
