import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel

from relay_locator.models.relay import RankedCandidate, ServerInstance, ServerLocation
from relay_locator.services.catalog_service import AbstractLocationCatalog
from relay_locator.services.probe_service import ReachabilityProbe, get_probe
from relay_locator.services.selector_service import CandidateSelector
from relay_locator.services.supabase_service import SupabaseCatalog

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["Relays"],
    responses={404: {"description": "Not found"}},
)


# Response models
class ClosestServer(BaseModel):
    """One entry of the closest-relay shortlist."""

    hostname: str
    country: str
    country_code: str
    city: str
    city_code: str
    latitude: Optional[float]
    longitude: Optional[float]
    ipv4: Optional[str]
    ipv6: Optional[str]
    provider: Optional[str]
    owned: bool
    speed: Optional[int]
    distance_km: int
    server_count: int
    latency_ms: Optional[float]

    @classmethod
    def from_candidate(cls, candidate: RankedCandidate) -> "ClosestServer":
        location = candidate.location
        server = candidate.chosen_server
        coordinate = location.coordinate
        return cls(
            hostname=server.hostname if server else f"{location.city_code}-server",
            country=location.country_name,
            country_code=location.country_code,
            city=location.city_name,
            city_code=location.city_code,
            latitude=coordinate.latitude if coordinate else None,
            longitude=coordinate.longitude if coordinate else None,
            ipv4=server.ipv4 if server else None,
            ipv6=server.ipv6 if server else None,
            provider=location.provider,
            owned=location.owned,
            speed=location.speed_gbps,
            distance_km=round(candidate.geo_distance_km),
            server_count=location.server_count,
            latency_ms=(
                round(candidate.measured_latency_ms, 2)
                if candidate.measured_latency_ms is not None
                else None
            ),
        )


class PingResponse(BaseModel):
    """Response for the single-relay probe endpoint."""

    hostname: str
    latency_ms: Optional[int]
    status: str


# --- Dependency Factory ---

# Singleton catalog, sharing the application's HTTP client
_catalog: Optional[AbstractLocationCatalog] = None


def get_catalog() -> AbstractLocationCatalog:
    """Get or create the singleton location catalog."""
    global _catalog
    if _catalog is None:
        _catalog = SupabaseCatalog()
    return _catalog


def get_selector(
    catalog: AbstractLocationCatalog = Depends(get_catalog),
    probe: ReachabilityProbe = Depends(get_probe),
) -> CandidateSelector:
    """Dependency building a selector over the active catalog and probe."""
    return CandidateSelector(catalog, probe)


# --- API Endpoints ---
# IMPORTANT: Specific routes must come BEFORE parameterized routes


@router.get(
    "/servers",
    response_model=List[ServerLocation],
    summary="List relay locations",
    description="Retrieves every relay location (one entry per city), ordered by country then city.",
)
async def list_locations(
    catalog: AbstractLocationCatalog = Depends(get_catalog),
):
    locations = await catalog.list_locations()
    logger.info(f"Returning {len(locations)} server locations")
    return locations


@router.get(
    "/servers/{city_code}/{country_code}",
    response_model=List[ServerInstance],
    summary="List relays in a city",
    description="Retrieves the individual relays of one location, ordered by hostname.",
)
async def list_servers_at(
    city_code: str = Path(
        ...,
        min_length=2,
        max_length=10,
        pattern="^[a-z0-9-]+$",
        description="Provider city code (e.g., 'sto')",
    ),
    country_code: str = Path(
        ...,
        min_length=2,
        max_length=10,
        pattern="^[a-z0-9-]+$",
        description="Provider country code (e.g., 'se')",
    ),
    catalog: AbstractLocationCatalog = Depends(get_catalog),
):
    servers = await catalog.servers_at(city_code, country_code)
    logger.info(f"Returning {len(servers)} servers for {city_code}, {country_code}")
    return servers


@router.get(
    "/closest",
    response_model=List[ClosestServer],
    summary="Find the closest relays",
    description="Ranks nearby relay locations by measured latency, falling back to distance.",
)
async def find_closest(
    lat: float = Query(..., description="User latitude in degrees"),
    lon: float = Query(..., description="User longitude in degrees"),
    selector: CandidateSelector = Depends(get_selector),
):
    """
    Finds the best relays for a user position.

    1. The closest locations by great-circle distance form a shortlist.
    2. Every relay in the shortlist is probed with a TCP connect.
    3. Locations are ranked by their fastest relay.

    When no relay answers, the closest locations by distance are returned
    with `latency_ms` set to null.
    """
    candidates = await selector.select((lat, lon))
    return [ClosestServer.from_candidate(c) for c in candidates]


@router.get(
    "/ping/{hostname}",
    response_model=PingResponse,
    summary="Probe one relay",
    description="Measures TCP connect latency to a single relay by hostname.",
)
async def ping_server(
    hostname: str = Path(
        ...,
        min_length=1,
        max_length=255,
        pattern="^[A-Za-z0-9.-]+$",
        description="Relay hostname (e.g., 'se-sto-wg-001')",
    ),
    catalog: AbstractLocationCatalog = Depends(get_catalog),
    probe: ReachabilityProbe = Depends(get_probe),
):
    server = await catalog.find_server(hostname)
    if server is None:
        raise HTTPException(status_code=404, detail=f"Unknown server '{hostname}'.")
    if not server.ipv4:
        return PingResponse(hostname=hostname, latency_ms=None, status="error")

    logger.info(f"Testing {hostname} ({server.ipv4})")
    result = await probe.probe_detailed(server.ipv4)

    return PingResponse(
        hostname=hostname,
        latency_ms=round(result.latency_ms) if result.latency_ms is not None else None,
        status=result.status,
    )
