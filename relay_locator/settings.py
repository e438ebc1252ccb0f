from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support and validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,  # Immutable settings for thread safety
    )

    # Relational store (PostgREST / Supabase)
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    supabase_service_role_key: Optional[str] = None

    # Upstream relay feed used by the ingestion job
    mullvad_api_url: str = "https://api.mullvad.net/www/relays/wireguard/"
    city_coordinates_path: str = "city-coordinates.json"

    # Cache settings (0 = no caching of the location list)
    cache_ttl: Annotated[int, Field(ge=0, le=3600)] = 300

    # HTTP Client settings
    http_timeout: Annotated[float, Field(ge=5.0, le=120.0)] = 30.0
    http_max_connections: Annotated[int, Field(ge=10, le=500)] = 100
    http_max_keepalive_connections: Annotated[int, Field(ge=5, le=100)] = 20

    # Reachability probing
    probe_ports: List[int] = [443, 80]
    probe_timeout_ms: Annotated[int, Field(ge=100, le=30000)] = 4000

    # Candidate selection funnel
    geo_shortlist_size: Annotated[int, Field(ge=1, le=200)] = 25
    final_shortlist_size: Annotated[int, Field(ge=1, le=50)] = 5

    # Security settings
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8000"]
    cors_allow_credentials: bool = True

    # Rate limiting (applies to probe-triggering routes only)
    rate_limit_enabled: bool = True
    rate_limit_requests: Annotated[int, Field(ge=1, le=10000)] = 20
    rate_limit_period: Annotated[int, Field(ge=10, le=3600)] = 60

    # Security headers
    enable_security_headers: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    # Application settings
    app_name: str = "Relay Locator"
    app_version: str = "1.0.0"
    debug: bool = False

    # Trusted proxies for X-Forwarded-For handling
    trusted_hosts: List[str] = ["127.0.0.1", "::1"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """Ensure no wildcard CORS in production-like settings."""
        if "*" in v:
            raise ValueError("Wildcard CORS origin '*' is not allowed for security")
        return v

    @field_validator("probe_ports")
    @classmethod
    def validate_probe_ports(cls, v: List[int]) -> List[int]:
        """Probe ports must be a non-empty list of valid TCP ports."""
        if not v:
            raise ValueError("At least one probe port is required")
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Invalid probe port: {port}")
        return v

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance for performance."""
    return Settings()


settings = get_settings()
