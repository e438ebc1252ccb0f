# relay_locator/services/ingest_service.py
"""Populate the location store from the Mullvad WireGuard relay feed."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from relay_locator.errors import DataUnavailable, UpstreamFeedError
from relay_locator.services.catalog_service import get_http_client
from relay_locator.services.supabase_service import rest_headers
from relay_locator.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class IngestBatch:
    """Rows ready to be upserted, one list per table."""

    cities: List[Dict[str, Any]] = field(default_factory=list)
    locations: List[Dict[str, Any]] = field(default_factory=list)
    servers: List[Dict[str, Any]] = field(default_factory=list)


def load_city_coordinates(path: str) -> Dict[str, Dict[str, float]]:
    """Read ``{"City": {"lat": .., "lon": ..}}`` from a JSON file."""
    with Path(path).open(encoding="utf-8") as f:
        return json.load(f)


def build_batch(
    relays: List[Dict[str, Any]],
    city_coordinates: Dict[str, Dict[str, float]],
) -> IngestBatch:
    """
    Turn raw relay feed entries into table rows.

    Inactive relays and relays without a hostname are skipped. Relays are
    grouped by (city_code, country_code); the location takes its provider,
    speed and ownership from the first relay of the group.
    """
    batch = IngestBatch()

    for name, coords in city_coordinates.items():
        try:
            batch.cities.append(
                {"name": name, "latitude": float(coords["lat"]), "longitude": float(coords["lon"])}
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping coordinates for {name}: {e}")

    groups: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
    for relay in relays:
        if not relay.get("active") or not relay.get("hostname"):
            continue
        key = (relay.get("city_code"), relay.get("country_code"))
        if not all(key):
            logger.warning(f"Skipping relay without city/country code: {relay.get('hostname')}")
            continue
        groups.setdefault(key, []).append(relay)

    for (city_code, country_code), members in groups.items():
        first = members[0]
        batch.locations.append(
            {
                "city_name": first.get("city_name"),
                "city_code": city_code,
                "country_name": first.get("country_name"),
                "country_code": country_code,
                "server_count": len(members),
                "provider": first.get("provider"),
                "speed": first.get("network_port_speed"),
                "owned": bool(first.get("owned")),
            }
        )
        for relay in members:
            batch.servers.append(
                {
                    "hostname": relay["hostname"],
                    "city_name": relay.get("city_name"),
                    "city_code": city_code,
                    "country_name": relay.get("country_name"),
                    "country_code": country_code,
                    "ipv4_addr_in": relay.get("ipv4_addr_in"),
                    "ipv6_addr_in": relay.get("ipv6_addr_in"),
                    "network_port_speed": relay.get("network_port_speed"),
                    "provider": relay.get("provider"),
                    "owned": bool(relay.get("owned")),
                    "socks_name": relay.get("socks_name"),
                }
            )

    return batch


class IngestService:
    """Fetches the relay feed and upserts cities, locations and servers."""

    def __init__(
        self,
        feed_url: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.feed_url = feed_url or settings.mullvad_api_url
        self.base_url = (base_url or settings.supabase_url).rstrip("/")
        if api_key is None:
            api_key = settings.supabase_service_role_key or settings.supabase_anon_key
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_http_client()

    async def fetch_relays(self) -> List[Dict[str, Any]]:
        """
        Fetch the raw relay list.

        Raises:
            UpstreamFeedError: If the feed cannot be fetched or is not a JSON array.
        """
        try:
            logger.info(f"Fetching relays from: {self.feed_url}")
            response = await self.client.get(self.feed_url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Relay feed HTTP error: {e.response.status_code}")
            raise UpstreamFeedError(f"Relay feed request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Relay feed request error: {str(e)}")
            raise UpstreamFeedError(f"Failed to connect to relay feed: {str(e)}") from e
        except ValueError as e:
            raise UpstreamFeedError("Relay feed returned invalid JSON") from e

        if not isinstance(data, list):
            raise UpstreamFeedError(f"Unexpected relay feed payload: {type(data).__name__}")

        logger.info(f"Received {len(data)} relays from feed")
        return data

    async def upsert(self, table: str, rows: List[Dict[str, Any]], on_conflict: str) -> int:
        """
        Insert or update rows through PostgREST.

        Raises:
            DataUnavailable: If the store rejects the write.
        """
        if not rows:
            return 0

        headers = rest_headers(self.api_key)
        headers["Prefer"] = "resolution=merge-duplicates,return=minimal"
        try:
            response = await self.client.post(
                f"{self.base_url}/rest/v1/{table}",
                params={"on_conflict": on_conflict},
                json=rows,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Upsert into {table} failed: {e.response.status_code} - {e.response.text}")
            raise DataUnavailable(f"Upsert into {table} failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Upsert into {table} request error: {str(e)}")
            raise DataUnavailable(f"Failed to connect to store: {str(e)}") from e

        logger.info(f"Upserted {len(rows)} rows into {table}")
        return len(rows)

    async def run(self, city_coordinates: Dict[str, Dict[str, float]]) -> IngestBatch:
        """Fetch, group and write everything. Cities go first; locations reference them."""
        relays = await self.fetch_relays()
        batch = build_batch(relays, city_coordinates)

        logger.info(
            f"Ingesting {len(batch.cities)} cities, {len(batch.locations)} locations, "
            f"{len(batch.servers)} servers"
        )

        await self.upsert("cities", batch.cities, "name")
        await self.upsert("server_locations", batch.locations, "city_code,country_code")
        await self.upsert("servers", batch.servers, "hostname")
        return batch
