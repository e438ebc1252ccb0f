# relay_locator/services/catalog_service.py
"""HTTP client management and the location catalog abstraction."""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

import httpx
import logging

from relay_locator.errors import DataUnavailable
from relay_locator.models.relay import ServerInstance, ServerLocation
from relay_locator.settings import settings

logger = logging.getLogger(__name__)

# HTTP client singleton - managed by application lifespan
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client instance."""
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized. Ensure app lifespan is active.")
    return _http_client


async def create_http_client() -> httpx.AsyncClient:
    """Create the pooled HTTP client used for store and relay feed requests."""
    global _http_client

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=5.0,  # Fast fail on connection issues
            read=settings.http_timeout,
            write=10.0,
            pool=5.0,
        ),
        limits=httpx.Limits(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive_connections,
            keepalive_expiry=30.0,
        ),
        http2=True,
        verify=True,
        follow_redirects=True,
        headers={
            "User-Agent": f"{settings.app_name}/{settings.app_version}",
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
        },
    )
    logger.info("HTTP client initialized with HTTP/2 and connection pooling")
    return _http_client


async def close_http_client() -> None:
    """Close the HTTP client and release resources."""
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
        logger.info("HTTP client closed")


class AbstractLocationCatalog(ABC):
    """
    Read-only access to relay locations and their member servers.

    Implementations never mutate the store. Any failure to reach or read it
    surfaces as DataUnavailable.
    """

    @abstractmethod
    async def list_locations(self) -> List[ServerLocation]:
        """
        Fetch every known location, ordered by country name then city name.

        Raises:
            DataUnavailable: If the store cannot be read.
        """
        pass

    @abstractmethod
    async def servers_at(self, city_code: str, country_code: str) -> List[ServerInstance]:
        """
        Fetch the relays of one location, ordered by hostname.

        Raises:
            DataUnavailable: If the store cannot be read.
        """
        pass

    @abstractmethod
    async def find_server(self, hostname: str) -> Optional[ServerInstance]:
        """
        Look up a single relay by hostname, or None if it is unknown.

        Raises:
            DataUnavailable: If the store cannot be read.
        """
        pass


class InMemoryCatalog(AbstractLocationCatalog):
    """Catalog backed by plain lists, for tests and offline use."""

    def __init__(
        self,
        locations: Iterable[ServerLocation] = (),
        servers: Iterable[ServerInstance] = (),
        available: bool = True,
    ):
        self._locations = sorted(
            locations, key=lambda loc: (loc.country_name, loc.city_name)
        )
        self._servers: Dict[Tuple[str, str], List[ServerInstance]] = {}
        for server in sorted(servers, key=lambda s: s.hostname):
            self._servers.setdefault((server.city_code, server.country_code), []).append(server)
        self.available = available
        self.calls: List[str] = []

    def _check_available(self) -> None:
        if not self.available:
            raise DataUnavailable("In-memory catalog marked unavailable")

    async def list_locations(self) -> List[ServerLocation]:
        self.calls.append("list_locations")
        self._check_available()
        return list(self._locations)

    async def servers_at(self, city_code: str, country_code: str) -> List[ServerInstance]:
        self.calls.append(f"servers_at:{city_code}:{country_code}")
        self._check_available()
        return list(self._servers.get((city_code, country_code), []))

    async def find_server(self, hostname: str) -> Optional[ServerInstance]:
        self.calls.append(f"find_server:{hostname}")
        self._check_available()
        for members in self._servers.values():
            for server in members:
                if server.hostname == hostname:
                    return server
        return None
