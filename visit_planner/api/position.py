# visit_planner/api/position.py
"""Operator live position.

The device (browser or phone) owns the geolocation API; the planner only sees
its one-shot answer: a coordinate, or a W3C-style error code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from visit_planner.api.errors import PositionUnavailable
from visit_planner.api.models import GeoCoordinate

logger = logging.getLogger(__name__)

# W3C GeolocationPositionError codes
_ERROR_CODES = {
    1: PositionUnavailable.PERMISSION_DENIED,
    2: PositionUnavailable.POSITION_UNAVAILABLE,
    3: PositionUnavailable.TIMEOUT,
}


@dataclass(frozen=True)
class PositionOptions:
    high_accuracy: bool = True
    timeout_s: float = 8.0
    maximum_age_s: float = 10.0


class PositionProvider:
    """Interface for one-shot "where is the operator now" requests."""

    async def current_position(self, options: PositionOptions = PositionOptions()) -> GeoCoordinate:
        raise NotImplementedError


class ReportedPositionProvider(PositionProvider):
    """Position reported by the client together with the request.

    Accepts either ``{"lat": .., "lng": .., "accuracy": ..}`` or
    ``{"error": {"code": 1|2|3, "message": ..}}``; a missing report means the
    device has no location support.
    """

    def __init__(self, report: Optional[Dict[str, Any]]):
        self.report = report or None

    async def current_position(self, options: PositionOptions = PositionOptions()) -> GeoCoordinate:
        if not self.report:
            raise PositionUnavailable(PositionUnavailable.UNSUPPORTED)

        error = self.report.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else error
            reason = _ERROR_CODES.get(_as_int(code), PositionUnavailable.POSITION_UNAVAILABLE)
            detail = error.get("message") if isinstance(error, dict) else None
            logger.info(f"Operator position unavailable: {reason} ({detail})")
            raise PositionUnavailable(reason, detail)

        age = _as_float(self.report.get("age_s"))
        if age is not None and age > options.maximum_age_s + options.timeout_s:
            raise PositionUnavailable(PositionUnavailable.TIMEOUT, f"Position is {age}s old")

        try:
            coordinate = GeoCoordinate(float(self.report["lat"]), float(self.report["lng"]))
        except (KeyError, TypeError, ValueError):
            raise PositionUnavailable(PositionUnavailable.POSITION_UNAVAILABLE, "Malformed position report")

        if not (-90 <= coordinate.lat <= 90 and -180 <= coordinate.lng <= 180):
            raise PositionUnavailable(PositionUnavailable.POSITION_UNAVAILABLE, "Position out of range")
        return coordinate


class FixedPositionProvider(PositionProvider):
    """Always answers with the same coordinate."""

    def __init__(self, coordinate: GeoCoordinate):
        self.coordinate = coordinate

    async def current_position(self, options: PositionOptions = PositionOptions()) -> GeoCoordinate:
        return self.coordinate


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = ["PositionOptions", "PositionProvider", "ReportedPositionProvider", "FixedPositionProvider"]
