# visit_planner/api/ordering.py
"""Visiting-order heuristics."""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

from visit_planner.api.models import GeoCoordinate, Stop

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoCoordinate, b: GeoCoordinate) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2)
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def renumber(stops: Sequence[Stop]) -> List[Stop]:
    """Copies of ``stops`` with ``order`` set to 1..N."""
    return [stop.copy(order=index) for index, stop in enumerate(stops, 1)]


class RouteOrderer:
    """Greedy nearest-neighbour ordering anchored on the operator's position."""

    @staticmethod
    def optimize(stops: Sequence[Stop], origin: Optional[GeoCoordinate]) -> List[Stop]:
        """Return a new visiting order; the input is never mutated.

        Stops without a coordinate keep their relative order at the end of
        the route. Quadratic in the number of stops, which is fine for a
        day's worth of visits.

        Args:
            stops: Current stops in their current order
            origin: Where the operator is now

        Returns:
            Renumbered copies of the stops in visiting order
        """
        if origin is None:
            raise ValueError("An origin is required to optimize the route")

        with_coord = [s for s in stops if s.coordinate is not None]
        without_coord = [s for s in stops if s.coordinate is None]

        if len(stops) < 2 or not with_coord:
            return renumber(stops)

        ordered: List[Stop] = []
        remaining = list(with_coord)
        current = origin
        while remaining:
            best_index = 0
            best_distance = haversine_km(current, remaining[0].coordinate)
            for index in range(1, len(remaining)):
                distance = haversine_km(current, remaining[index].coordinate)
                # strict comparison: ties keep the earlier stop
                if distance < best_distance:
                    best_index, best_distance = index, distance
            nearest = remaining.pop(best_index)
            ordered.append(nearest)
            current = nearest.coordinate

        if without_coord:
            logger.info(f"{len(without_coord)} stop(s) without coordinates appended after the optimized route")
        return renumber(ordered + without_coord)


__all__ = ["RouteOrderer", "haversine_km", "renumber"]
