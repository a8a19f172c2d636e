# visit_planner/api/services/map_service.py
"""Service layer for map-related output: markers, bounds and deep links."""

import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, urlencode

from visit_planner.api.models import Stop

logger = logging.getLogger(__name__)

GOOGLE_MAPS_DIR_URL = "https://www.google.com/maps/dir/"
GOOGLE_MAPS_SEARCH_URL = "https://www.google.com/maps/search/"


class MapService:
    """Pure helpers feeding the map widget and external navigation apps."""

    @staticmethod
    def validate_coordinates(lat: float, lng: float) -> bool:
        """Validate that coordinates are within valid ranges.

        Args:
            lat: Latitude
            lng: Longitude

        Returns:
            True if valid, False otherwise
        """
        return -90 <= lat <= 90 and -180 <= lng <= 180

    @staticmethod
    def build_markers(stops: Sequence[Stop]) -> List[Dict[str, Any]]:
        """Ordered marker list for the placed stops.

        Stops without a coordinate are left out; their sequence numbers are
        kept so the numbering on the map matches the itinerary list.
        """
        markers = []
        for stop in stops:
            if stop.coordinate is None:
                continue
            if not MapService.validate_coordinates(stop.coordinate.lat, stop.coordinate.lng):
                logger.warning(f"Skipping marker for '{stop.label}': coordinate out of range")
                continue
            markers.append({
                "id": stop.id,
                "coordinate": stop.coordinate.to_dict(),
                "label": stop.label,
                "sequence_number": stop.order,
            })
        return markers

    @staticmethod
    def calculate_bounds(stops: Sequence[Stop]) -> Dict[str, Any]:
        """Calculate bounding box for all placed stops.

        Returns:
            Dictionary with north, south, east, west bounds (empty if nothing
            is placed)
        """
        lats = [s.coordinate.lat for s in stops if s.coordinate is not None]
        lngs = [s.coordinate.lng for s in stops if s.coordinate is not None]

        if not lats or not lngs:
            return {}

        return {
            "north": max(lats),
            "south": min(lats),
            "east": max(lngs),
            "west": min(lngs),
        }

    @staticmethod
    def build_navigation_url(addresses: Sequence[str], travel_mode: Optional[str] = None) -> Optional[str]:
        """Google Maps directions link for the final visiting order.

        The first address is the origin, the last the destination and the
        ones in between become ``|``-separated waypoints. No network access.

        Returns:
            The URL, or None when there are no addresses
        """
        addresses = [a for a in addresses if a and a.strip()]
        if not addresses:
            return None

        params = {"api": "1", "origin": addresses[0], "destination": addresses[-1]}
        if len(addresses) > 2:
            params["waypoints"] = "|".join(addresses[1:-1])
        if travel_mode:
            params["travelmode"] = travel_mode
        return f"{GOOGLE_MAPS_DIR_URL}?{urlencode(params, quote_via=quote)}"

    @staticmethod
    def build_search_url(address: str) -> str:
        """Link that opens a single address in Google Maps."""
        return f"{GOOGLE_MAPS_SEARCH_URL}?{urlencode({'api': '1', 'query': address}, quote_via=quote)}"

    @staticmethod
    def build_directions_url(address: str) -> str:
        """Link with directions from the device's location to one address."""
        return f"{GOOGLE_MAPS_DIR_URL}?{urlencode({'api': '1', 'destination': address}, quote_via=quote)}"

    @staticmethod
    def format_totals(total_distance_km: float, total_duration_min: Optional[float]) -> Dict[str, Any]:
        """Display-ready totals; duration is None when only an estimate exists."""
        duration = None if total_duration_min is None else int(round(total_duration_min))
        text = f"{total_distance_km:.1f} km"
        if duration is not None:
            hours, minutes = divmod(duration, 60)
            text += f" · {hours} h {minutes} min" if hours else f" · {minutes} min"
        return {
            "total_distance_km": round(total_distance_km, 1),
            "total_duration_min": duration,
            "text": text,
        }


# Export for use in other modules
__all__ = ["MapService"]
