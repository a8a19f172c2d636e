# visit_planner/api/services/itinerary_service.py
"""In-memory itinerary model with consistent legs and totals.

Mutations commit the new stop sequence immediately, then run a full
recompute of every leg. Each structural commit bumps ``version``; a recompute
only applies its result if the version is unchanged when it completes, so
the latest mutation always wins over slower, older ones.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from visit_planner.api.errors import PositionUnavailable, RoutingUnavailable, ValidationError
from visit_planner.api.geocoding import Geocoder
from visit_planner.api.models import (
    ROUTING_ESTIMATE,
    ROUTING_NONE,
    GeoCoordinate,
    Itinerary,
    LocationRecord,
    Stop,
)
from visit_planner.api.ordering import RouteOrderer, renumber
from visit_planner.api.position import PositionOptions, PositionProvider
from visit_planner.api.routing import DistanceMatrixClient, RouteMetrics
from visit_planner.api.services.draft_service import DraftStore
from visit_planner.api.services.map_service import MapService

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class ConfirmationRequired:
    """Returned instead of acting when the caller must confirm first."""

    action: str
    message: str


@dataclass(frozen=True)
class OptimizeResult:
    applied: bool
    changed: bool = False
    reason: Optional[str] = None
    message: str = ""
    unplaced: tuple = ()

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "changed": self.changed,
            "reason": self.reason,
            "message": self.message,
            "unplaced": list(self.unplaced),
        }


class ItineraryState:
    """Ordered stops for one operator, edited through a single writer."""

    def __init__(self, geocoder: Optional[Geocoder], distance_client: DistanceMatrixClient,
                 draft_store: Optional[DraftStore] = None):
        self.geocoder = geocoder
        self.distance_client = distance_client
        self.draft_store = draft_store

        self._itinerary = Itinerary()
        self._version = 0
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    @property
    def version(self) -> int:
        return self._version

    @property
    def stops(self) -> List[Stop]:
        with self._lock:
            return [stop.copy() for stop in self._itinerary.stops]

    def is_empty(self) -> bool:
        return not self._itinerary.stops

    def snapshot(self) -> Itinerary:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> Itinerary:
        it = self._itinerary
        return Itinerary(
            stops=[stop.copy() for stop in it.stops],
            scheduled_date=it.scheduled_date,
            scheduled_time=it.scheduled_time,
            total_distance_km=it.total_distance_km,
            total_duration_min=it.total_duration_min,
            routing_source=it.routing_source,
        )

    def addresses(self) -> List[str]:
        return [stop.address for stop in self.stops]

    def markers(self) -> List[Dict[str, Any]]:
        return MapService.build_markers(self.stops)

    def totals(self) -> Dict[str, Any]:
        snapshot = self.snapshot()
        totals = MapService.format_totals(snapshot.total_distance_km, snapshot.total_duration_min)
        totals["routing_source"] = snapshot.routing_source
        totals["stop_count"] = len(snapshot.stops)
        return totals

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback receiving the itinerary dict after each change."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # ------------------------------------------------------------------
    # Internal state transitions (caller holds the lock)
    # ------------------------------------------------------------------
    def _commit(self, stops: Sequence[Stop]) -> int:
        stops = renumber(stops)
        for index, stop in enumerate(stops):
            predecessor = stops[index - 1].id if index else None
            if predecessor is None or stop.leg_from_id != predecessor:
                stop.clear_leg()
        self._itinerary.stops = stops
        self._refresh_totals()
        self._version += 1
        return self._version

    def _refresh_totals(self) -> None:
        it = self._itinerary
        if not it.stops:
            it.total_distance_km = 0.0
            it.total_duration_min = 0.0
            it.routing_source = ROUTING_NONE
            return
        it.total_distance_km = sum(s.leg_distance_km for s in it.stops if s.leg_distance_km is not None)
        if it.routing_source == ROUTING_ESTIMATE:
            it.total_duration_min = None
        else:
            it.total_duration_min = sum(s.leg_duration_min for s in it.stops if s.leg_duration_min is not None)

    def _reset(self) -> int:
        self._itinerary = Itinerary()
        self._version += 1
        return self._version

    def _apply_metrics(self, metrics: RouteMetrics) -> None:
        stops = self._itinerary.stops
        self._itinerary.routing_source = metrics.source
        for index, stop in enumerate(stops):
            leg = metrics.legs[index - 1] if 0 < index <= len(metrics.legs) else None
            if leg is None:
                stop.clear_leg()
                continue
            stop.leg_distance_km = leg.distance_km
            stop.leg_duration_min = leg.duration_min
            stop.leg_from_id = stops[index - 1].id
        self._refresh_totals()

    def _find(self, record_id: str) -> Optional[Stop]:
        for stop in self._itinerary.stops:
            if stop.id == record_id:
                return stop
        return None

    def _set_coordinate(self, record_id: str, coordinate: Optional[GeoCoordinate]) -> None:
        stop = self._find(record_id)
        if stop is None:
            return
        if coordinate is None:
            stop.unresolved = True
        else:
            stop.coordinate = coordinate
            stop.unresolved = False

    # ------------------------------------------------------------------
    # Pipeline: geocode → recompute → autosave → notify
    # ------------------------------------------------------------------
    async def _recompute(self, version: int) -> bool:
        with self._lock:
            if version != self._version:
                return False
            addresses = [stop.address for stop in self._itinerary.stops]
            known = [stop.coordinate for stop in self._itinerary.stops]

        try:
            metrics = await self.distance_client.compute_legs(addresses, known)
        except RoutingUnavailable as e:
            logger.warning(f"Keeping previous leg metrics, routing unavailable: {e}")
            metrics = None

        with self._lock:
            if version != self._version:
                logger.debug(f"Discarding superseded recompute (v{version}, current v{self._version})")
                return False
            if metrics is not None:
                self._apply_metrics(metrics)
            snapshot = self._snapshot_locked()

        self._after_change(snapshot)
        return True

    async def _resolve_missing(self) -> bool:
        if self.geocoder is None:
            return False
        with self._lock:
            pending = [s.record for s in self._itinerary.stops if s.coordinate is None]
        if not pending:
            return False
        resolved = await self.geocoder.resolve_records(pending)
        with self._lock:
            for record_id, coordinate in resolved.items():
                self._set_coordinate(record_id, coordinate)
        return True

    def _publish_current(self) -> None:
        """Save and broadcast coordinates found by a pipeline whose recompute was superseded."""
        with self._lock:
            snapshot = self._snapshot_locked()
        self._after_change(snapshot)

    def _after_change(self, snapshot: Itinerary) -> None:
        if self.draft_store is not None:
            self.draft_store.save(snapshot)

        payload = snapshot.to_dict()
        payload["markers"] = MapService.build_markers(snapshot.stops)
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Itinerary listener failed: {e}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def add_stop(self, record: LocationRecord) -> Stop:
        """Append a location as the last stop and recompute the route.

        Raises:
            ValidationError: the location is already part of the itinerary
        """
        with self._lock:
            if self._find(record.id) is not None:
                raise ValidationError(f"'{record.label}' is already in the itinerary")
            stop = Stop(record=record, order=len(self._itinerary.stops) + 1, coordinate=record.coordinate)
            version = self._commit(self._itinerary.stops + [stop])
        logger.info(f"Added stop '{record.label}' (v{version})")

        geocoded = False
        if record.coordinate is None and self.geocoder is not None:
            coordinate, _ = await self.geocoder.resolve_record(record)
            with self._lock:
                self._set_coordinate(record.id, coordinate)
            geocoded = True

        if not await self._recompute(version) and geocoded:
            self._publish_current()
        with self._lock:
            current = self._find(record.id)
            return current.copy() if current is not None else stop

    async def remove_stop(self, record_id: str) -> bool:
        """Remove a stop; returns False when no stop has that id."""
        with self._lock:
            remaining = [s for s in self._itinerary.stops if s.id != record_id]
            if len(remaining) == len(self._itinerary.stops):
                return False
            if remaining:
                version = self._commit(remaining)
            else:
                version = self._reset()
                snapshot = self._snapshot_locked()
        logger.info(f"Removed stop {record_id} (v{version})")

        if not remaining:
            self._after_change(snapshot)
            return True

        await self._recompute(version)
        return True

    async def move_up(self, index: int) -> bool:
        """Swap the stop at ``index`` with the one before it."""
        return await self._swap(index, index - 1)

    async def move_down(self, index: int) -> bool:
        """Swap the stop at ``index`` with the one after it."""
        return await self._swap(index, index + 1)

    async def _swap(self, index: int, other: int) -> bool:
        with self._lock:
            stops = list(self._itinerary.stops)
            if not (0 <= index < len(stops) and 0 <= other < len(stops)):
                return False
            stops[index], stops[other] = stops[other], stops[index]
            version = self._commit(stops)
        await self._recompute(version)
        return True

    async def replace_order(self, new_order: Sequence[Stop]) -> None:
        """Atomically replace the visiting order.

        Args:
            new_order: The current stops (matched by id) in their new order

        Raises:
            ValidationError: ``new_order`` is not a permutation of the current stops
        """
        with self._lock:
            current = {stop.id: stop for stop in self._itinerary.stops}
            ids = [stop.id for stop in new_order]
            if len(ids) != len(current) or set(ids) != set(current):
                raise ValidationError("New order must contain exactly the current stops")
            version = self._commit([current[stop_id] for stop_id in ids])
        await self._recompute(version)

    def clear(self) -> None:
        """Empty the itinerary, zero its totals and drop the draft."""
        with self._lock:
            self._reset()
            snapshot = self._snapshot_locked()
        self._after_change(snapshot)
        logger.info("Itinerary cleared")

    def set_schedule(self, scheduled_date: Optional[str], scheduled_time: Optional[str]) -> None:
        """Set the planned date (YYYY-MM-DD) and start time (HH:MM).

        Raises:
            ValidationError: malformed date or time
        """
        scheduled_date = _checked(scheduled_date, "%Y-%m-%d", "date")
        scheduled_time = _checked(scheduled_time, "%H:%M", "time")
        with self._lock:
            self._itinerary.scheduled_date = scheduled_date
            self._itinerary.scheduled_time = scheduled_time
            snapshot = self._snapshot_locked()
        self._after_change(snapshot)

    async def optimize(self, position_provider: PositionProvider,
                       options: PositionOptions = PositionOptions()) -> OptimizeResult:
        """Reorder stops with the nearest-neighbour heuristic from the operator's position.

        Without a live position the action is refused; no default origin
        is ever substituted.
        """
        try:
            origin = await position_provider.current_position(options)
        except PositionUnavailable as e:
            logger.info(f"Optimize refused: {e.reason}")
            return OptimizeResult(applied=False, reason=e.reason, message=str(e))

        current = self.stops
        unplaced = tuple(s.label for s in current if s.coordinate is None)
        if len(current) < 2:
            return OptimizeResult(applied=False, reason="not_enough_stops",
                                  message="At least two stops are needed to optimize", unplaced=unplaced)
        if len(unplaced) == len(current):
            return OptimizeResult(applied=False, reason="no_coordinates",
                                  message="No stop has a known location", unplaced=unplaced)

        ordered = RouteOrderer.optimize(current, origin)
        if [s.id for s in ordered] == [s.id for s in current]:
            return OptimizeResult(applied=True, changed=False,
                                  message="Stops are already in the suggested order", unplaced=unplaced)

        try:
            await self.replace_order(ordered)
        except ValidationError:
            logger.info("Optimize discarded: stops changed while it was running")
            return OptimizeResult(applied=False, reason="superseded",
                                  message="The itinerary changed while optimizing", unplaced=unplaced)
        return OptimizeResult(applied=True, changed=True, message="Route optimized", unplaced=unplaced)

    async def restore_draft(self) -> bool:
        """Restore the operator's draft if nothing is being built right now."""
        if self.draft_store is None or not self.is_empty():
            return False
        draft = self.draft_store.load()
        if draft is None:
            return False
        with self._lock:
            if self._itinerary.stops:
                return False
            version = self._install(draft)
        logger.info(f"Draft restored with {len(draft.stops)} stops")
        await self._reload(version)
        return True

    async def load_itinerary(self, itinerary: Itinerary,
                             confirmed: bool = False) -> Union[ConfirmationRequired, Itinerary]:
        """Replace the in-progress itinerary with ``itinerary``.

        Returns:
            ConfirmationRequired when stops would be discarded and the caller
            has not confirmed; otherwise the loaded itinerary snapshot
        """
        if not confirmed and not self.is_empty():
            return ConfirmationRequired(
                action="load_itinerary",
                message=f"Loading will replace the current itinerary ({len(self._itinerary.stops)} stops)",
            )
        with self._lock:
            version = self._install(itinerary)
        await self._reload(version)
        return self.snapshot()

    def _install(self, itinerary: Itinerary) -> int:
        self._itinerary = Itinerary(
            scheduled_date=itinerary.scheduled_date,
            scheduled_time=itinerary.scheduled_time,
            routing_source=itinerary.routing_source,
        )
        return self._commit([stop.copy() for stop in itinerary.stops])

    async def _reload(self, version: int) -> None:
        geocoded = await self._resolve_missing()
        if not await self._recompute(version) and geocoded:
            self._publish_current()


def _checked(value: Optional[str], fmt: str, what: str) -> Optional[str]:
    if value in (None, ""):
        return None
    try:
        datetime.strptime(value, fmt)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {what} '{value}'")
    return value


__all__ = ["ItineraryState", "ConfirmationRequired", "OptimizeResult"]
