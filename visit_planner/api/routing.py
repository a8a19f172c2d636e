# visit_planner/api/routing.py
"""Per-leg distance and duration for an ordered list of addresses."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import googlemaps

from visit_planner.api.config import get_routing_config
from visit_planner.api.errors import PartialLegFailure, RoutingUnavailable
from visit_planner.api.geocoding import Geocoder
from visit_planner.api.map_handle import MapHandle
from visit_planner.api.models import (
    ROUTING_ESTIMATE,
    ROUTING_NONE,
    ROUTING_PROVIDER,
    GeoCoordinate,
    LegMetrics,
)
from visit_planner.api.ordering import haversine_km

logger = logging.getLogger(__name__)


@dataclass
class RouteMetrics:
    """Result of a full recompute.

    ``legs[i]`` is the drive from address ``i`` to address ``i + 1``; a
    ``None`` entry means that leg could not be measured.
    """

    legs: List[Optional[LegMetrics]] = field(default_factory=list)
    total_distance_km: float = 0.0
    total_duration_min: Optional[float] = 0.0
    source: str = ROUTING_NONE
    failed_legs: List[int] = field(default_factory=list)

    @classmethod
    def from_legs(cls, legs: List[Optional[LegMetrics]], source: str) -> "RouteMetrics":
        total_distance = sum(leg.distance_km for leg in legs if leg is not None and leg.distance_km is not None)
        if source == ROUTING_ESTIMATE:
            total_duration = None
        else:
            total_duration = sum(leg.duration_min for leg in legs
                                 if leg is not None and leg.duration_min is not None)
        failed = [i for i, leg in enumerate(legs) if leg is None]
        return cls(legs, total_distance, total_duration, source, failed)


class GoogleDistanceProvider:
    """One Distance Matrix element per leg, in the order supplied."""

    def __init__(self, client: googlemaps.Client, mode: str = "driving", language: str = "es"):
        self.client = client
        self.mode = mode
        self.language = language

    def measure(self, index: int, origin: str, destination: str) -> Tuple[float, float]:
        """Return (meters, seconds) for one leg.

        Raises:
            RoutingUnavailable: the request itself failed
            PartialLegFailure: the provider answered but could not route this leg
        """
        try:
            body = self.client.distance_matrix(
                origins=[origin],
                destinations=[destination],
                mode=self.mode,
                language=self.language,
            )
        except (googlemaps.exceptions.ApiError,
                googlemaps.exceptions.TransportError,
                googlemaps.exceptions.Timeout) as e:
            raise RoutingUnavailable(f"Distance matrix request failed: {e}") from e

        try:
            element = body["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError):
            raise PartialLegFailure(index, origin, destination, "MALFORMED_RESPONSE")

        status = element.get("status", "UNKNOWN_ERROR")
        if status != "OK":
            raise PartialLegFailure(index, origin, destination, status)
        return float(element["distance"]["value"]), float(element["duration"]["value"])


class DistanceMatrixClient:
    """Turn an ordered address list into per-leg metrics and totals."""

    def __init__(self, provider: Optional[GoogleDistanceProvider], geocoder: Optional[Geocoder] = None,
                 *, timeout_s: float = 10.0):
        self.provider = provider
        self.geocoder = geocoder
        self.timeout_s = timeout_s

    async def compute_legs(self, addresses: Sequence[str],
                           known: Optional[Sequence[Optional[GeoCoordinate]]] = None) -> RouteMetrics:
        """Compute legs for ``addresses`` in exactly the order given.

        Args:
            addresses: Stop addresses in visiting order
            known: Coordinates already known, aligned with ``addresses``
                (None where unknown); the straight-line estimate uses them
                instead of geocoding

        Returns:
            RouteMetrics with N-1 legs for N addresses

        Raises:
            RoutingUnavailable: neither the provider nor the estimate could
                measure a single leg
        """
        addresses = list(addresses)
        if len(addresses) < 2:
            return RouteMetrics()

        if self.provider is not None:
            legs = await self._provider_legs(addresses)
            if any(leg is not None for leg in legs):
                metrics = RouteMetrics.from_legs(legs, ROUTING_PROVIDER)
                logger.info(
                    f"Route computed: {len(addresses)} stops, {metrics.total_distance_km:.1f} km, "
                    f"{metrics.total_duration_min:.0f} min, failed legs: {metrics.failed_legs}"
                )
                return metrics
            logger.warning("Routing provider failed for every leg; falling back to straight-line estimate")
        else:
            logger.info("No routing provider configured; using straight-line estimate")

        return await self._estimate_legs(addresses, list(known or []))

    async def _provider_legs(self, addresses: List[str]) -> List[Optional[LegMetrics]]:
        legs: List[Optional[LegMetrics]] = []
        for index in range(len(addresses) - 1):
            origin, destination = addresses[index], addresses[index + 1]
            try:
                meters, seconds = await asyncio.wait_for(
                    asyncio.to_thread(self.provider.measure, index, origin, destination),
                    timeout=self.timeout_s,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Leg {index + 1} ({origin} -> {destination}) timed out")
                legs.append(None)
                continue
            except (PartialLegFailure, RoutingUnavailable) as e:
                logger.warning(str(e))
                legs.append(None)
                continue
            legs.append(LegMetrics(meters / 1000.0, seconds / 60.0))
        return legs

    async def _estimate_legs(self, addresses: List[str], known: List[Optional[GeoCoordinate]]) -> RouteMetrics:
        coords: List[Optional[GeoCoordinate]] = [
            known[i] if i < len(known) else None for i in range(len(addresses))
        ]
        # empty addresses stay unresolved
        missing = [a for i, a in enumerate(addresses) if coords[i] is None and a and a.strip()]
        if missing:
            if self.geocoder is None:
                raise RoutingUnavailable("Routing provider failed and no geocoder is available for an estimate")
            resolved = await self.geocoder.resolve_many(missing)
            for i, address in enumerate(addresses):
                if coords[i] is None and address and address.strip():
                    coords[i] = resolved.get(address)

        legs: List[Optional[LegMetrics]] = []
        for a, b in zip(coords, coords[1:]):
            if a is None or b is None:
                legs.append(None)
            else:
                legs.append(LegMetrics(haversine_km(a, b), None))

        if not any(leg is not None for leg in legs):
            raise RoutingUnavailable("Could not estimate any leg of the route")

        metrics = RouteMetrics.from_legs(legs, ROUTING_ESTIMATE)
        logger.info(f"Estimated route: {len(addresses)} stops, {metrics.total_distance_km:.1f} km (duration unavailable)")
        return metrics


def build_distance_client(handle: MapHandle, geocoder: Optional[Geocoder]) -> DistanceMatrixClient:
    cfg = get_routing_config()
    provider = None
    if handle.has_google:
        provider = GoogleDistanceProvider(handle.gmaps, mode=cfg["mode"], language=handle.language)
    return DistanceMatrixClient(provider, geocoder, timeout_s=cfg["timeout_seconds"])


__all__ = ["RouteMetrics", "GoogleDistanceProvider", "DistanceMatrixClient", "build_distance_client"]
