# relay_locator/services/supabase_service.py
from typing import Any, Dict, List, Optional
import logging
import httpx
from aiocache import SimpleMemoryCache
from relay_locator.errors import DataUnavailable, InvalidCoordinate
from relay_locator.models.relay import Coordinate, ServerInstance, ServerLocation
from relay_locator.services.catalog_service import (
    AbstractLocationCatalog,
    get_http_client,
)
from relay_locator.settings import settings

logger = logging.getLogger(__name__)

LOCATIONS_CACHE_KEY = "server_locations"
SERVER_COLUMNS = (
    "hostname,city_code,country_code,ipv4_addr_in,ipv6_addr_in,"
    "network_port_speed,provider,owned"
)


def rest_headers(api_key: str) -> Dict[str, str]:
    """PostgREST headers for a Supabase project key."""
    headers = {"Accept": "application/json"}
    if api_key:
        headers["apikey"] = api_key
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


class SupabaseCatalog(AbstractLocationCatalog):
    """
    Location catalog backed by the Supabase REST (PostgREST) interface.

    Tables: ``cities`` (coordinates by city name), ``server_locations``
    (one row per city) and ``servers`` (one row per relay).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        cache_ttl: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.supabase_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.supabase_anon_key
        self.cache_ttl = settings.cache_ttl if cache_ttl is None else cache_ttl
        self._client = client
        self._cache = SimpleMemoryCache()

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_http_client()

    async def _get(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """
        Run a PostgREST select against one table.

        Raises:
            DataUnavailable: On transport errors, non-2xx responses or a
                payload that is not a JSON array.
        """
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            response = await self.client.get(
                url, params=params, headers=rest_headers(self.api_key)
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Store HTTP error on {table}: {e.response.status_code} - {e.response.text}")
            raise DataUnavailable(f"Store request failed for {table}: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Store request error on {table}: {str(e)}")
            raise DataUnavailable(f"Failed to connect to store: {str(e)}") from e
        except ValueError as e:
            logger.error(f"Store returned invalid JSON for {table}: {str(e)}")
            raise DataUnavailable(f"Invalid response from store for {table}") from e

        if not isinstance(data, list):
            raise DataUnavailable(f"Unexpected payload type for {table}: {type(data).__name__}")
        return data

    async def list_locations(self) -> List[ServerLocation]:
        """
        Fetches every server location joined with its city coordinates, in
        country then city order. The parsed list is cached for cache_ttl seconds.

        Raises:
            DataUnavailable: If the store request fails.
        """
        if self.cache_ttl:
            cached = await self._cache.get(LOCATIONS_CACHE_KEY)
            if cached is not None:
                return list(cached)

        rows = await self._get(
            "server_locations",
            {
                "select": "*,cities!inner(latitude,longitude)",
                "order": "country_name.asc,city_name.asc",
            },
        )
        logger.info(f"Received {len(rows)} server locations from store")

        locations = self._parse_locations(rows)

        if self.cache_ttl:
            await self._cache.set(LOCATIONS_CACHE_KEY, locations, ttl=self.cache_ttl)
        return list(locations)

    def _parse_locations(self, rows: List[dict]) -> List[ServerLocation]:
        """Parse location rows, flattening the embedded city coordinates.

        A row whose coordinates are missing or out of range is kept with
        coordinate=None. A row that cannot be parsed at all is skipped.
        """
        locations = []
        for row in rows:
            try:
                city = row.get("cities") or {}
                coordinate = None
                latitude = city.get("latitude")
                longitude = city.get("longitude")
                if latitude is not None and longitude is not None:
                    try:
                        coordinate = Coordinate.from_degrees(latitude, longitude)
                    except InvalidCoordinate:
                        logger.warning(
                            f"Discarding bad coordinates for {row.get('city_name')}: "
                            f"{latitude}, {longitude}"
                        )

                locations.append(
                    ServerLocation(
                        city_name=row["city_name"],
                        city_code=row["city_code"],
                        country_name=row["country_name"],
                        country_code=row["country_code"],
                        coordinate=coordinate,
                        server_count=row.get("server_count") or 0,
                        provider=row.get("provider"),
                        speed_gbps=row.get("speed"),
                        owned=bool(row.get("owned")),
                    )
                )
            except (KeyError, ValueError, AttributeError, TypeError) as e:
                logger.warning(f"Failed to parse server location: {str(e)}")
                continue

        return locations

    async def servers_at(self, city_code: str, country_code: str) -> List[ServerInstance]:
        """
        Fetches the relays of one city, ordered by hostname.

        Raises:
            DataUnavailable: If the store request fails.
        """
        rows = await self._get(
            "servers",
            {
                "select": SERVER_COLUMNS,
                "city_code": f"eq.{city_code}",
                "country_code": f"eq.{country_code}",
                "order": "hostname.asc",
            },
        )
        logger.debug(f"Received {len(rows)} servers for {city_code}, {country_code}")
        return self._parse_servers(rows)

    async def find_server(self, hostname: str) -> Optional[ServerInstance]:
        rows = await self._get(
            "servers",
            {"select": SERVER_COLUMNS, "hostname": f"eq.{hostname}", "limit": "1"},
        )
        servers = self._parse_servers(rows)
        return servers[0] if servers else None

    def _parse_servers(self, rows: List[dict]) -> List[ServerInstance]:
        servers = []
        for row in rows:
            try:
                servers.append(
                    ServerInstance(
                        hostname=row["hostname"],
                        city_code=row["city_code"],
                        country_code=row["country_code"],
                        ipv4=row.get("ipv4_addr_in"),
                        ipv6=row.get("ipv6_addr_in"),
                        port_speed=row.get("network_port_speed"),
                        provider=row.get("provider"),
                        owned=bool(row.get("owned")),
                    )
                )
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Failed to parse server row: {str(e)}")
                continue
        return servers

    async def clear_cache(self) -> None:
        await self._cache.clear()
