# visit_planner/api/services/planner_session.py
"""Per-operator planner sessions and the registry that owns them."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from visit_planner.api.errors import ValidationError
from visit_planner.api.geocoding import build_geocoder
from visit_planner.api.map_handle import MapHandle
from visit_planner.api.models import Itinerary, LocationRecord, SavedItinerary
from visit_planner.api.routing import build_distance_client
from visit_planner.api.services.draft_service import DraftStore
from visit_planner.api.services.itinerary_service import ConfirmationRequired, ItineraryState
from visit_planner.api.services.location_directory import LocationDirectory, StaticLocationDirectory
from visit_planner.api.services.repository import ItineraryRepository, build_repository
from visit_planner.api.storage import LocalStore

logger = logging.getLogger(__name__)


class PlannerSession:
    """Everything one operator works with: the itinerary being built, its
    draft, the saved itineraries and the locations they may visit."""

    def __init__(self, operator_id: str, state: ItineraryState, repository: ItineraryRepository,
                 directory: LocationDirectory):
        self.operator_id = operator_id
        self.state = state
        self.repository = repository
        self.directory = directory

        self.created_at = datetime.now()
        self.last_activity = self.created_at
        self._started = False

    def touch(self) -> None:
        self.last_activity = datetime.now()

    async def start(self) -> bool:
        """Restore the operator's draft the first time the session is used.

        Returns:
            True if a draft was restored
        """
        if self._started:
            return False
        self._started = True
        return await self.state.restore_draft()

    def locations(self) -> List[LocationRecord]:
        return self.directory.list_for_operator(self.operator_id)

    def find_location(self, record_id: str) -> Optional[LocationRecord]:
        return self.directory.get(self.operator_id, record_id)

    async def add_location(self, record_id: str):
        """Add a directory location to the itinerary by its id.

        Raises:
            ValidationError: unknown location or already in the itinerary
        """
        record = self.find_location(record_id)
        if record is None:
            raise ValidationError(f"Unknown location '{record_id}'")
        return await self.state.add_stop(record)

    def promote(self, name: str) -> SavedItinerary:
        """Save the current itinerary under ``name`` and start a fresh one.

        Raises:
            ValidationError: blank name or nothing to save
            PersistenceUnavailable: neither store accepted the itinerary
        """
        snapshot = self.state.snapshot()
        if snapshot.is_empty:
            raise ValidationError("The itinerary has no stops to save")
        saved = self.repository.create(name, snapshot)
        self.state.clear()
        return saved

    async def load_saved(self, itinerary_id: str,
                         confirmed: bool = False) -> Union[ConfirmationRequired, Itinerary]:
        """Load a saved itinerary into the editor.

        Raises:
            ValidationError: unknown itinerary id
        """
        saved = self.repository.get(itinerary_id)
        if saved is None:
            raise ValidationError(f"Unknown itinerary '{itinerary_id}'")
        result = await self.state.load_itinerary(saved.itinerary, confirmed=confirmed)
        if not isinstance(result, ConfirmationRequired):
            logger.info(f"Operator {self.operator_id} loaded itinerary '{saved.name}'")
        return result

    def info(self) -> Dict[str, Any]:
        totals = self.state.totals()
        return {
            "operator_id": self.operator_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "stops": totals["stop_count"],
            "routing_source": totals["routing_source"],
        }


class PlannerRegistry:
    """Creates and tracks one PlannerSession per operator.

    The MapHandle, local store and location directory are shared by every
    session; geocode cache, draft and saved itineraries are keyed per operator.
    """

    def __init__(self, handle: MapHandle, store: LocalStore, directory: Optional[LocationDirectory] = None,
                 session_timeout_seconds: int = 8 * 3600):
        self.handle = handle
        self.store = store
        self.directory = directory or StaticLocationDirectory()
        self.session_timeout_seconds = session_timeout_seconds

        self.sessions: Dict[str, PlannerSession] = {}
        self.lock = threading.Lock()

    def _build(self, operator_id: str) -> PlannerSession:
        geocoder = build_geocoder(self.handle, self.store, operator_id)
        state = ItineraryState(
            geocoder,
            build_distance_client(self.handle, geocoder),
            DraftStore(self.store, operator_id),
        )
        repository = build_repository(operator_id, self.store, session=self.handle.http)
        return PlannerSession(operator_id, state, repository, self.directory)

    def get_or_create(self, operator_id: str) -> PlannerSession:
        if not operator_id:
            raise ValidationError("Operator id is required")
        with self.lock:
            session = self.sessions.get(operator_id)
            if session is None:
                session = self._build(operator_id)
                self.sessions[operator_id] = session
                logger.info(f"Created planner session for operator {operator_id}")
        session.touch()
        return session

    async def open(self, operator_id: str) -> PlannerSession:
        """Session for ``operator_id``, with its draft restored on first use."""
        self.cleanup_expired()
        session = self.get_or_create(operator_id)
        if await session.start():
            logger.info(f"Restored draft for operator {operator_id}")
        return session

    def get_session(self, operator_id: str) -> Optional[PlannerSession]:
        with self.lock:
            return self.sessions.get(operator_id)

    def remove_session(self, operator_id: str) -> None:
        with self.lock:
            if self.sessions.pop(operator_id, None) is not None:
                logger.info(f"Removed planner session for operator {operator_id}")

    def cleanup_expired(self) -> int:
        """Drop sessions idle for longer than the timeout; drafts stay on disk."""
        cutoff = datetime.now() - timedelta(seconds=self.session_timeout_seconds)
        with self.lock:
            expired = [op for op, s in self.sessions.items() if s.last_activity < cutoff]
            for operator_id in expired:
                del self.sessions[operator_id]
        if expired:
            logger.info(f"Cleaned up {len(expired)} idle planner sessions")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            sessions = list(self.sessions.values())
        return {
            "total_sessions": len(sessions),
            "sessions": [s.info() for s in sessions],
            "google_maps": self.handle.has_google,
            "local_store": self.store.available,
        }


__all__ = ["PlannerSession", "PlannerRegistry"]
