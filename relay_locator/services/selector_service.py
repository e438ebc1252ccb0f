"""
Closest relay selection.

Ranking is a two-phase funnel:

1. Geographic shortlist: every location with coordinates is scored by
   great-circle distance to the user, and the closest ``geo_limit`` are kept.
2. Reachability: every relay of every shortlisted location is probed
   concurrently; each location is represented by its fastest relay. Locations
   that answered are ranked by latency and the best ``final_limit`` returned.

If nothing answered at all (probe ports filtered upstream, offline host, ...),
the closest ``final_limit`` locations are returned by distance instead, each
represented by its first relay.
"""

import asyncio
import logging
import time
from typing import List, Optional, Sequence, Tuple, Union

from relay_locator.errors import DataUnavailable, InvalidCoordinate
from relay_locator.models.relay import (
    Coordinate,
    RankedCandidate,
    ServerInstance,
    ServerLocation,
)
from relay_locator.services.catalog_service import AbstractLocationCatalog
from relay_locator.services.geo_service import distance_km
from relay_locator.services.probe_service import ReachabilityProbe
from relay_locator.settings import settings

logger = logging.getLogger(__name__)

CoordinateInput = Union[Coordinate, Tuple[float, float]]


def ensure_coordinate(value: CoordinateInput) -> Coordinate:
    """
    Normalize user input to a validated Coordinate.

    Raises:
        InvalidCoordinate: If the value is not a finite, in-range pair.
    """
    if isinstance(value, Coordinate):
        if not value.is_valid():
            raise InvalidCoordinate(f"Invalid coordinate ({value.latitude!r}, {value.longitude!r})")
        return value
    try:
        latitude, longitude = value
    except (TypeError, ValueError) as e:
        raise InvalidCoordinate(f"Expected a (latitude, longitude) pair, got {value!r}") from e
    return Coordinate.from_degrees(latitude, longitude)


class CandidateSelector:
    """Ranks relay locations for a user coordinate."""

    def __init__(
        self,
        catalog: AbstractLocationCatalog,
        probe: ReachabilityProbe,
        geo_limit: Optional[int] = None,
        final_limit: Optional[int] = None,
    ):
        self.catalog = catalog
        self.probe = probe
        self.geo_limit = geo_limit if geo_limit is not None else settings.geo_shortlist_size
        self.final_limit = final_limit if final_limit is not None else settings.final_shortlist_size

    async def select(self, coordinate: CoordinateInput) -> List[RankedCandidate]:
        """
        Return at most ``final_limit`` ranked candidates for a user coordinate.

        Args:
            coordinate: A Coordinate or a (latitude, longitude) pair.

        Raises:
            InvalidCoordinate: If the coordinate is malformed. Checked before
                any catalog access or probing.
            DataUnavailable: If the location list cannot be fetched.
        """
        user = ensure_coordinate(coordinate)
        started = time.perf_counter()

        logger.info(f"Selecting relays for {user.latitude}, {user.longitude}")

        shortlist = self.geographic_shortlist(user, await self.catalog.list_locations())
        logger.info(
            f"Geographic shortlist of {len(shortlist)} locations "
            f"(closest: {shortlist[0].location.city_name if shortlist else 'none'})"
        )

        probed = await asyncio.gather(*(self._probe_location(c) for c in shortlist))

        measured = [c for c in probed if c.measured_latency_ms is not None]
        if measured:
            ranked = sorted(measured, key=lambda c: c.measured_latency_ms)[: self.final_limit]
            logger.info(
                f"{len(measured)}/{len(probed)} locations answered, "
                f"best {ranked[0].location.city_name} at {ranked[0].measured_latency_ms:.1f}ms"
            )
        else:
            ranked = probed[: self.final_limit]
            if probed:
                logger.warning(
                    f"No location answered probes, falling back to the "
                    f"{len(ranked)} closest by distance"
                )

        logger.info(f"Selection complete in {(time.perf_counter() - started) * 1000:.0f}ms")
        return ranked

    def geographic_shortlist(
        self,
        user: Coordinate,
        locations: Sequence[ServerLocation],
    ) -> List[RankedCandidate]:
        """Closest ``geo_limit`` locations with coordinates, nearest first.

        sorted() is stable, so equal distances keep catalog order.
        """
        scored = [
            RankedCandidate(
                location=location,
                geo_distance_km=distance_km(user, location.coordinate),
            )
            for location in locations
            if location.coordinate is not None
        ]
        scored.sort(key=lambda c: c.geo_distance_km)
        return scored[: self.geo_limit]

    async def _probe_location(self, candidate: RankedCandidate) -> RankedCandidate:
        """Probe every relay of a location and keep the fastest one.

        A location whose relays cannot be listed or never answer keeps its
        first relay (if any) and no latency.
        """
        location = candidate.location
        try:
            servers = await self.catalog.servers_at(location.city_code, location.country_code)
        except DataUnavailable as e:
            logger.warning(f"Could not list servers for {location.city_name}: {e}")
            servers = []

        if not servers:
            return candidate

        latencies = await asyncio.gather(*(self._probe_server(s) for s in servers))

        best: Optional[Tuple[float, ServerInstance]] = None
        for server, latency in zip(servers, latencies):
            if latency is not None and (best is None or latency < best[0]):
                best = (latency, server)

        if best is None:
            logger.debug(f"{location.city_name}: all {len(servers)} servers unreachable")
            return candidate.model_copy(update={"chosen_server": servers[0]})

        latency, server = best
        logger.debug(f"{location.city_name}: {latency:.1f}ms (best of {len(servers)} servers)")
        return candidate.model_copy(
            update={"chosen_server": server, "measured_latency_ms": latency}
        )

    async def _probe_server(self, server: ServerInstance) -> Optional[float]:
        if not server.ipv4:
            return None
        return await self.probe.probe(server.ipv4)
