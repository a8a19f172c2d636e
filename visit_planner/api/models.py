"""Shared data structures for visit planning.

Every persisted shape (cache entry, draft, saved itinerary) is built from
these dataclasses and serialised through ``to_dict`` / ``from_dict`` so the
local store and the remote store agree on a single JSON layout.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class GeoCoordinate:
    """A resolved latitude/longitude pair."""

    lat: float
    lng: float

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["GeoCoordinate"]:
        if not data:
            return None
        lat = data.get("lat")
        lng = data.get("lng", data.get("lon"))
        if lat is None or lng is None:
            return None
        return cls(float(lat), float(lng))


@dataclass(frozen=True)
class LocationRecord:
    """A customer location owned by the external directory (read-only here)."""

    id: str
    label: str
    address_lines: Tuple[str, ...] = ()
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    coordinate: Optional[GeoCoordinate] = None

    @property
    def address(self) -> str:
        """Exact address string used as the geocoding and routing key."""
        return ", ".join(line.strip() for line in self.address_lines if line and line.strip())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "address_lines": list(self.address_lines),
            "city": self.city,
            "province": self.province,
            "country": self.country,
            "coordinate": self.coordinate.to_dict() if self.coordinate else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocationRecord":
        lines = data.get("address_lines")
        if lines is None:
            address = data.get("address") or ""
            lines = [address] if address else []
        coordinate = GeoCoordinate.from_dict(data.get("coordinate"))
        if coordinate is None and data.get("latitude") is not None and data.get("longitude") is not None:
            coordinate = GeoCoordinate(float(data["latitude"]), float(data["longitude"]))
        return cls(
            id=str(data["id"]),
            label=data.get("label") or data.get("name") or str(data["id"]),
            address_lines=tuple(str(line) for line in lines),
            city=data.get("city"),
            province=data.get("province"),
            country=data.get("country"),
            coordinate=coordinate,
        )


@dataclass(frozen=True)
class CacheEntry:
    """One geocoding result stored under its exact address string."""

    address: str
    coordinate: GeoCoordinate
    cached_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {"address": self.address, **self.coordinate.to_dict(), "cached_at": self.cached_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            address=data["address"],
            coordinate=GeoCoordinate(float(data["lat"]), float(data["lng"])),
            cached_at=data.get("cached_at") or utc_now_iso(),
        )


@dataclass(frozen=True)
class LegMetrics:
    """Distance/duration of the drive between two consecutive stops."""

    distance_km: Optional[float]
    duration_min: Optional[float] = None


@dataclass
class Stop:
    """A single visit within an itinerary.

    ``leg_distance_km`` / ``leg_duration_min`` describe the leg that ends at
    this stop, so they are always ``None`` on the first stop.
    ``leg_from_id`` records which stop that leg started at.
    """

    record: LocationRecord
    order: int
    coordinate: Optional[GeoCoordinate] = None
    leg_distance_km: Optional[float] = None
    leg_duration_min: Optional[float] = None
    leg_from_id: Optional[str] = None
    unresolved: bool = False

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def label(self) -> str:
        return self.record.label

    @property
    def address(self) -> str:
        return self.record.address

    def clear_leg(self) -> None:
        self.leg_distance_km = None
        self.leg_duration_min = None
        self.leg_from_id = None

    def copy(self, **changes) -> "Stop":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict(),
            "order": self.order,
            "coordinate": self.coordinate.to_dict() if self.coordinate else None,
            "leg_distance_km": self.leg_distance_km,
            "leg_duration_min": self.leg_duration_min,
            "leg_from_id": self.leg_from_id,
            "unresolved": self.unresolved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stop":
        return cls(
            record=LocationRecord.from_dict(data["record"]),
            order=int(data["order"]),
            coordinate=GeoCoordinate.from_dict(data.get("coordinate")),
            leg_distance_km=_optional_float(data.get("leg_distance_km")),
            leg_duration_min=_optional_float(data.get("leg_duration_min")),
            leg_from_id=data.get("leg_from_id"),
            unresolved=bool(data.get("unresolved", False)),
        )


ROUTING_NONE = "none"
ROUTING_PROVIDER = "provider"
ROUTING_ESTIMATE = "estimate"


@dataclass
class Itinerary:
    """The working set of stops plus scheduling metadata and totals."""

    stops: List[Stop] = field(default_factory=list)
    scheduled_date: Optional[str] = None
    scheduled_time: Optional[str] = None
    total_distance_km: float = 0.0
    total_duration_min: Optional[float] = 0.0
    routing_source: str = ROUTING_NONE

    @property
    def is_empty(self) -> bool:
        return not self.stops

    def to_dict(self) -> dict:
        return {
            "stops": [stop.to_dict() for stop in self.stops],
            "scheduled_date": self.scheduled_date,
            "scheduled_time": self.scheduled_time,
            "total_distance_km": self.total_distance_km,
            "total_duration_min": self.total_duration_min,
            "routing_source": self.routing_source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Itinerary":
        stops = [Stop.from_dict(item) for item in data.get("stops") or []]
        return cls(
            stops=stops,
            scheduled_date=data.get("scheduled_date") or None,
            scheduled_time=data.get("scheduled_time") or None,
            total_distance_km=float(data.get("total_distance_km") or 0.0),
            total_duration_min=_optional_float(data.get("total_duration_min")),
            routing_source=data.get("routing_source") or ROUTING_NONE,
        )


STORAGE_REMOTE = "remote"
STORAGE_LOCAL = "local"


@dataclass(frozen=True)
class SavedItinerary:
    """A named, explicitly saved itinerary snapshot."""

    id: str
    name: str
    itinerary: Itinerary
    created_at: str = field(default_factory=utc_now_iso)
    storage: str = STORAGE_REMOTE
    pending_sync: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "itinerary": self.itinerary.to_dict(),
            "created_at": self.created_at,
            "storage": self.storage,
            "pending_sync": self.pending_sync,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], storage: Optional[str] = None) -> "SavedItinerary":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            itinerary=Itinerary.from_dict(data.get("itinerary") or {}),
            created_at=data.get("created_at") or utc_now_iso(),
            storage=storage or data.get("storage") or STORAGE_REMOTE,
            pending_sync=bool(data.get("pending_sync", False)),
        )
