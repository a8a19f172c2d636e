# visit_planner/api/errors.py
"""Exception taxonomy shared by the planner core.

Only ``ValidationError`` and ``PositionUnavailable`` are meant to reach the
caller of a user action; the others are raised inside a component and caught
where its fallback lives.
"""

from __future__ import annotations

from typing import Optional


class PlannerError(Exception):
    """Base class for planner failures."""


class ValidationError(PlannerError, ValueError):
    """Invalid input for a single operation; itinerary state is untouched."""


class UnresolvedAddress(PlannerError):
    """Every geocoding provider failed for an address."""

    def __init__(self, address: str, detail: str = ""):
        self.address = address
        self.detail = detail
        message = f"Could not resolve address '{address}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class GeocodingProviderError(PlannerError):
    """A single geocoding provider failed (transport, quota, bad response)."""


class RoutingUnavailable(PlannerError):
    """The routing provider failed for the whole request."""


class PartialLegFailure(PlannerError):
    """One leg of a multi-stop route could not be measured."""

    def __init__(self, index: int, origin: str, destination: str, status: str):
        self.index = index
        self.origin = origin
        self.destination = destination
        self.status = status
        super().__init__(f"Leg {index + 1} ({origin} -> {destination}) failed: {status}")


class PersistenceUnavailable(PlannerError):
    """The remote itinerary store cannot be reached or is not deployed."""


class StoreUnavailable(PlannerError):
    """The local key-value store cannot be used."""


class CorruptEntry(PlannerError, ValueError):
    """A stored document could not be parsed."""


class PositionUnavailable(PlannerError):
    """The operator's live position could not be obtained."""

    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"

    MESSAGES = {
        PERMISSION_DENIED: "Location permission was denied",
        POSITION_UNAVAILABLE: "Current location is unavailable",
        TIMEOUT: "Timed out waiting for the current location",
        UNSUPPORTED: "Location services are not available on this device",
    }

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(self.MESSAGES.get(reason, f"Location error: {reason}"))


__all__ = [
    "PlannerError",
    "ValidationError",
    "UnresolvedAddress",
    "GeocodingProviderError",
    "RoutingUnavailable",
    "PartialLegFailure",
    "PersistenceUnavailable",
    "StoreUnavailable",
    "CorruptEntry",
    "PositionUnavailable",
]
