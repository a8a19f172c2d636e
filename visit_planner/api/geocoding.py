# visit_planner/api/geocoding.py
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import googlemaps
import requests

from visit_planner.api.config import get_geocoding_config, get_nominatim_config
from visit_planner.api.errors import (
    CorruptEntry,
    GeocodingProviderError,
    StoreUnavailable,
    UnresolvedAddress,
)
from visit_planner.api.map_handle import MapHandle
from visit_planner.api.models import CacheEntry, GeoCoordinate, LocationRecord
from visit_planner.api.storage import LocalStore

logger = logging.getLogger(__name__)

STATUS_OK = "OK"
STATUS_ZERO_RESULTS = "ZERO_RESULTS"


@dataclass(frozen=True)
class GeocodeCandidate:
    coordinate: Optional[GeoCoordinate]
    label: str = ""


@dataclass(frozen=True)
class GeocodeResponse:
    """Normalised provider answer: a status plus zero or more candidates."""

    status: str
    candidates: List[GeocodeCandidate] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


# ────────────────────────────────────────────────────────────────────────────────
# Providers
# ────────────────────────────────────────────────────────────────────────────────
class GoogleGeocodingProvider:
    """Primary provider: Google Geocoding API through ``googlemaps``."""

    name = "google"

    def __init__(self, client: googlemaps.Client, language: str = "es", region: str = "es"):
        self.client = client
        self.language = language
        self.region = region

    def lookup(self, address: str) -> GeocodeResponse:
        try:
            results = self.client.geocode(address, language=self.language, region=self.region)
        except (googlemaps.exceptions.ApiError,
                googlemaps.exceptions.TransportError,
                googlemaps.exceptions.Timeout) as e:
            raise GeocodingProviderError(f"Google geocoding failed for '{address}': {e}") from e

        if not results:
            return GeocodeResponse(STATUS_ZERO_RESULTS)

        candidates = []
        for result in results:
            loc = (result.get("geometry") or {}).get("location") or {}
            coordinate = None
            if loc.get("lat") is not None and loc.get("lng") is not None:
                coordinate = GeoCoordinate(float(loc["lat"]), float(loc["lng"]))
            candidates.append(GeocodeCandidate(coordinate, result.get("formatted_address") or address))
        return GeocodeResponse(STATUS_OK, candidates)


class NominatimProvider:
    """Secondary provider: OpenStreetMap Nominatim search endpoint.

    Public and rate limited, so batch callers must pace requests.
    """

    name = "nominatim"

    def __init__(self, session: requests.Session, base_url: str, email: str = "",
                 accept_language: str = "es,en;q=0.9", timeout: float = 8.0):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.accept_language = accept_language
        self.timeout = timeout

    def lookup(self, address: str) -> GeocodeResponse:
        params = {"format": "json", "q": address, "limit": 1}
        if self.email:
            params["email"] = self.email

        try:
            response = self.session.get(
                f"{self.base_url}/search",
                params=params,
                headers={"Accept-Language": self.accept_language},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise GeocodingProviderError(f"Nominatim lookup failed for '{address}': {e}") from e

        if not isinstance(data, list) or not data:
            return GeocodeResponse(STATUS_ZERO_RESULTS)

        candidates = []
        for item in data:
            try:
                coordinate = GeoCoordinate(float(item["lat"]), float(item["lon"]))
            except (KeyError, TypeError, ValueError):
                coordinate = None
            candidates.append(GeocodeCandidate(coordinate, item.get("display_name") or address))
        return GeocodeResponse(STATUS_OK, candidates)


# ────────────────────────────────────────────────────────────────────────────────
# Cache
# ────────────────────────────────────────────────────────────────────────────────
class GeocodeCache:
    """Persistent address → coordinate cache.

    Keys are the exact address strings handed to the geocoder. A missing or
    broken backing store turns every lookup into a miss; nothing here raises.
    """

    def __init__(self, store: Optional[LocalStore], operator_id: str = "default"):
        self.store = store
        self.key = f"geocode-cache:{operator_id}"
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, dict]:
        if self.store is None:
            return {}
        try:
            entries = self.store.get(self.key)
        except (StoreUnavailable, CorruptEntry) as e:
            logger.warning(f"Geocode cache unavailable, treating as miss: {e}")
            return {}
        return entries if isinstance(entries, dict) else {}

    def get(self, address: str) -> Optional[GeoCoordinate]:
        raw = self._read().get(address)
        if not raw:
            return None
        try:
            return CacheEntry.from_dict(raw).coordinate
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Ignoring malformed cache entry for '{address}'")
            return None

    def put(self, address: str, coordinate: GeoCoordinate) -> None:
        if self.store is None:
            return
        with self._lock:
            entries = self._read()
            entries[address] = CacheEntry(address, coordinate).to_dict()
            try:
                self.store.set(self.key, entries)
            except StoreUnavailable as e:
                logger.warning(f"Could not cache coordinates for '{address}': {e}")


# ────────────────────────────────────────────────────────────────────────────────
# Geocoder
# ────────────────────────────────────────────────────────────────────────────────
class Geocoder:
    """Resolve addresses through cache → primary → secondary."""

    def __init__(self, cache: GeocodeCache, primary=None, secondary=None, *,
                 timeout_s: float = 8.0, batch_delay_s: float = 0.35,
                 default_country: str = ""):
        self.cache = cache
        self.providers = [p for p in (primary, secondary) if p is not None]
        self.timeout_s = timeout_s
        self.batch_delay_s = batch_delay_s
        self.default_country = default_country
        self._inflight: Dict[str, concurrent.futures.Future] = {}
        self._inflight_lock = threading.Lock()

    async def resolve(self, address: str) -> Optional[GeoCoordinate]:
        """Resolve a free-text address to a coordinate, or None if unresolved.

        Never raises. Concurrent calls for the same address, from any thread or
        event loop, wait for the lookup already in flight instead of issuing
        another.
        """
        if not address or not address.strip():
            return None

        cached = self.cache.get(address)
        if cached is not None:
            logger.debug(f"Geocode cache hit for '{address}'")
            return cached

        with self._inflight_lock:
            pending = self._inflight.get(address)
            if pending is None:
                future = concurrent.futures.Future()
                # running futures cannot be cancelled by a departing waiter
                future.set_running_or_notify_cancel()
                self._inflight[address] = future
        if pending is not None:
            logger.debug(f"Joining in-flight lookup for '{address}'")
            return await asyncio.wrap_future(pending)

        coordinate = None
        try:
            coordinate = await self._lookup(address)
        except UnresolvedAddress as e:
            logger.warning(str(e))
        except Exception:
            logger.exception(f"Unexpected geocoding error for '{address}'")
        finally:
            with self._inflight_lock:
                if self._inflight.get(address) is future:
                    del self._inflight[address]
            future.set_result(coordinate)
        return coordinate

    async def _lookup(self, address: str) -> GeoCoordinate:
        errors = []
        for provider in self.providers:
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(provider.lookup, address), timeout=self.timeout_s
                )
            except asyncio.TimeoutError:
                logger.warning(f"{provider.name} geocoding timed out for '{address}'")
                errors.append(f"{provider.name}: timeout")
                continue
            except GeocodingProviderError as e:
                logger.warning(str(e))
                errors.append(f"{provider.name}: {e}")
                continue

            coordinate = self._accept(response)
            if coordinate is None:
                logger.info(f"{provider.name} returned no usable result for '{address}'")
                errors.append(f"{provider.name}: {response.status}")
                continue

            logger.debug(f"Geocoded '{address}' via {provider.name} to {coordinate.lat}, {coordinate.lng}")
            self.cache.put(address, coordinate)
            return coordinate

        raise UnresolvedAddress(address, "; ".join(errors) or "no providers configured")

    @staticmethod
    def _accept(response: GeocodeResponse) -> Optional[GeoCoordinate]:
        if not response.ok:
            return None
        for candidate in response.candidates:
            if candidate.coordinate is not None:
                return candidate.coordinate
        return None

    async def resolve_many(self, addresses: Iterable[str]) -> Dict[str, Optional[GeoCoordinate]]:
        """Resolve addresses one at a time, pausing between network lookups.

        Args:
            addresses: Addresses to resolve; duplicates are looked up once

        Returns:
            Dictionary mapping each address to its coordinate or None
        """
        results: Dict[str, Optional[GeoCoordinate]] = {}
        looked_up = 0
        for address in addresses:
            if address in results:
                continue
            cached = self.cache.get(address) if address else None
            if cached is not None:
                results[address] = cached
                continue
            if looked_up and self.batch_delay_s > 0:
                await asyncio.sleep(self.batch_delay_s)
            results[address] = await self.resolve(address)
            looked_up += 1

        resolved = sum(1 for c in results.values() if c is not None)
        logger.info(f"Batch geocoded {resolved}/{len(results)} addresses ({looked_up} network lookups)")
        return results

    def _record_queries(self, record: LocationRecord) -> List[str]:
        city = (record.city or "").strip()
        province = (record.province or "").strip()
        country = (record.country or self.default_country or "").strip()

        queries = [record.address]
        if city or province:
            queries.append(", ".join(p for p in (city, province, country) if p))
        if province:
            queries.append(", ".join(p for p in (province, country) if p))

        unique = []
        for query in queries:
            if query and query not in unique:
                unique.append(query)
        return unique

    async def resolve_record(self, record: LocationRecord) -> Tuple[Optional[GeoCoordinate], bool]:
        """Coordinate for a location record.

        A coordinate already known on the record always wins. Otherwise the
        full address is tried, then progressively coarser city/province
        queries.

        Returns:
            (coordinate or None, whether geocoding was attempted)
        """
        if record.coordinate is not None:
            return record.coordinate, False

        for query in self._record_queries(record):
            coordinate = await self.resolve(query)
            if coordinate is not None:
                if query != record.address:
                    logger.info(f"Placed '{record.label}' using coarse query '{query}'")
                return coordinate, True

        logger.warning(f"Stop '{record.label}' could not be placed on the map")
        return None, True

    async def resolve_records(self, records: Iterable[LocationRecord]) -> Dict[str, Optional[GeoCoordinate]]:
        """Batch version of ``resolve_record`` used when an itinerary is loaded.

        Lookups run strictly one after another with ``batch_delay_s`` between
        records that needed the network.

        Returns:
            Dictionary mapping record id to coordinate or None
        """
        results: Dict[str, Optional[GeoCoordinate]] = {}
        looked_up = 0
        for record in records:
            if record.id in results:
                continue
            if record.coordinate is not None:
                results[record.id] = record.coordinate
                continue
            cached = self.cache.get(record.address) if record.address else None
            if cached is not None:
                results[record.id] = cached
                continue
            if looked_up and self.batch_delay_s > 0:
                await asyncio.sleep(self.batch_delay_s)
            results[record.id], _ = await self.resolve_record(record)
            looked_up += 1
        return results


def build_geocoder(handle: MapHandle, store: Optional[LocalStore], operator_id: str = "default") -> Geocoder:
    """Wire a Geocoder for one operator from the shared MapHandle."""
    geo_cfg = get_geocoding_config()
    nominatim_cfg = get_nominatim_config()

    primary = None
    if handle.has_google:
        primary = GoogleGeocodingProvider(handle.gmaps, language=handle.language, region=handle.region)
    secondary = NominatimProvider(
        handle.http,
        nominatim_cfg["base_url"],
        email=nominatim_cfg["email"],
        accept_language=nominatim_cfg["accept_language"],
        timeout=geo_cfg["timeout_seconds"],
    )
    return Geocoder(
        GeocodeCache(store, operator_id),
        primary,
        secondary,
        timeout_s=geo_cfg["timeout_seconds"],
        batch_delay_s=geo_cfg["batch_delay_seconds"],
        default_country=geo_cfg["default_country"],
    )


# Re-export for clean imports elsewhere
__all__ = [
    "GeocodeCandidate",
    "GeocodeResponse",
    "GoogleGeocodingProvider",
    "NominatimProvider",
    "GeocodeCache",
    "Geocoder",
    "build_geocoder",
]
