# visit_planner/api/services/draft_service.py
"""Autosave/restore of the in-progress itinerary."""

import logging
from typing import Optional

from visit_planner.api.errors import CorruptEntry, StoreUnavailable
from visit_planner.api.models import Itinerary
from visit_planner.api.storage import LocalStore

logger = logging.getLogger(__name__)


class DraftStore:
    """One draft per operator, overwritten on every itinerary change."""

    def __init__(self, store: LocalStore, operator_id: str):
        self.store = store
        self.operator_id = operator_id
        self.key = f"route-draft:{operator_id}"

    def save(self, itinerary: Itinerary) -> None:
        """Persist the itinerary; an empty one removes the draft instead."""
        if itinerary.is_empty and not itinerary.scheduled_date and not itinerary.scheduled_time:
            self.clear()
            return
        try:
            self.store.set(self.key, itinerary.to_dict())
            logger.debug(f"Draft saved for {self.operator_id} ({len(itinerary.stops)} stops)")
        except StoreUnavailable as e:
            logger.warning(f"Could not save draft for {self.operator_id}: {e}")

    def load(self) -> Optional[Itinerary]:
        """Return the stored draft or None.

        A corrupt or unparsable draft is treated as absent.
        """
        try:
            raw = self.store.get(self.key)
        except (StoreUnavailable, CorruptEntry) as e:
            logger.warning(f"Ignoring unreadable draft for {self.operator_id}: {e}")
            return None

        if not raw or not isinstance(raw, dict):
            return None

        try:
            itinerary = Itinerary.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed draft for {self.operator_id}: {e}")
            return None

        if itinerary.is_empty and not itinerary.scheduled_date and not itinerary.scheduled_time:
            return None
        return itinerary

    def clear(self) -> None:
        try:
            self.store.remove(self.key)
            logger.debug(f"Draft cleared for {self.operator_id}")
        except StoreUnavailable as e:
            logger.warning(f"Could not clear draft for {self.operator_id}: {e}")


__all__ = ["DraftStore"]
