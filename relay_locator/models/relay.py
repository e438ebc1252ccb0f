import math
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from relay_locator.errors import InvalidCoordinate


class Coordinate(BaseModel):
    """
    A point on the globe in decimal degrees.
    """
    latitude: float = Field(
        ...,
        ge=-90.0,
        le=90.0,
        allow_inf_nan=False,
        description="Latitude in degrees, -90 to 90."
    )
    longitude: float = Field(
        ...,
        ge=-180.0,
        le=180.0,
        allow_inf_nan=False,
        description="Longitude in degrees, -180 to 180."
    )

    model_config = {"frozen": True}

    @classmethod
    def from_degrees(cls, latitude, longitude) -> "Coordinate":
        """
        Build a coordinate from raw degrees.

        Raises:
            InvalidCoordinate: If either value is missing, not a finite number,
                or outside its range.
        """
        try:
            return cls(latitude=latitude, longitude=longitude)
        except ValidationError as e:
            raise InvalidCoordinate(
                f"Invalid coordinate ({latitude!r}, {longitude!r})"
            ) from e

    def is_valid(self) -> bool:
        """Re-check the invariants, for instances built without validation."""
        return (
            isinstance(self.latitude, (int, float))
            and isinstance(self.longitude, (int, float))
            and math.isfinite(self.latitude)
            and math.isfinite(self.longitude)
            and -90.0 <= self.latitude <= 90.0
            and -180.0 <= self.longitude <= 180.0
        )


class ServerLocation(BaseModel):
    """
    A city-level group of relays sharing one set of coordinates.
    """
    city_name: str = Field(..., description="The city name, e.g. 'Stockholm'.")
    city_code: str = Field(..., description="The provider's city code, e.g. 'sto'.")
    country_name: str = Field(..., description="The country name.")
    country_code: str = Field(..., description="The provider's country code, e.g. 'se'.")
    coordinate: Optional[Coordinate] = Field(
        None,
        description="City coordinates; locations without them are never ranked."
    )
    server_count: int = Field(0, ge=0, description="Number of relays in this city.")
    provider: Optional[str] = Field(None, description="Hosting provider of the relays.")
    speed_gbps: Optional[int] = Field(None, ge=0, description="Network port speed in Gbps.")
    owned: bool = Field(False, description="Whether the relays are provider-owned hardware.")

    model_config = {"from_attributes": True}


class ServerInstance(BaseModel):
    """
    An individual relay belonging to a ServerLocation.
    """
    hostname: str = Field(..., description="Unique relay hostname, e.g. 'se-sto-wg-001'.")
    city_code: str
    country_code: str
    ipv4: Optional[str] = Field(None, description="Inbound IPv4 address.")
    ipv6: Optional[str] = Field(None, description="Inbound IPv6 address.")
    port_speed: Optional[int] = Field(None, ge=0, description="Network port speed in Gbps.")
    provider: Optional[str] = None
    owned: bool = False

    model_config = {"from_attributes": True}


class RankedCandidate(BaseModel):
    """
    One entry of a selection result. Computed per request, never persisted.
    """
    location: ServerLocation
    geo_distance_km: float = Field(..., ge=0)
    chosen_server: Optional[ServerInstance] = None
    measured_latency_ms: Optional[float] = Field(
        None,
        ge=0,
        description="Fastest TCP connect time among the location's relays, if any answered."
    )
