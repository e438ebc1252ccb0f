"""Relay location services."""

from relay_locator.services.catalog_service import AbstractLocationCatalog, InMemoryCatalog
from relay_locator.services.probe_service import ReachabilityProbe
from relay_locator.services.selector_service import CandidateSelector
from relay_locator.services.supabase_service import SupabaseCatalog

__all__ = [
    "AbstractLocationCatalog",
    "CandidateSelector",
    "InMemoryCatalog",
    "ReachabilityProbe",
    "SupabaseCatalog",
]
