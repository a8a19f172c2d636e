# visit_planner/api/services/repository.py
"""Named itineraries: remote HTTP store with a local fallback."""

import logging
import uuid
from typing import List, Optional

import requests

from visit_planner.api.config import get_persistence_config
from visit_planner.api.errors import (
    CorruptEntry,
    PersistenceUnavailable,
    StoreUnavailable,
    ValidationError,
)
from visit_planner.api.models import (
    STORAGE_LOCAL,
    STORAGE_REMOTE,
    Itinerary,
    SavedItinerary,
    utc_now_iso,
)
from visit_planner.api.storage import LocalStore

logger = logging.getLogger(__name__)

# Statuses that mean "the store is not there", as opposed to "the request was wrong".
_UNAVAILABLE_STATUSES = {404, 405, 501, 502, 503, 504}


class RemoteItineraryStore:
    """HTTP client for the itinerary backend.

    Every transport-level problem is raised as PersistenceUnavailable so the
    repository can switch to the local store.
    """

    def __init__(self, base_url: str, token: str = "", *, session: Optional[requests.Session] = None,
                 timeout: float = 8.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _request(self, method: str, path: str, missing_ok: bool = False, **kwargs) -> requests.Response:
        if not self.configured:
            raise PersistenceUnavailable("No remote itinerary store configured")

        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise PersistenceUnavailable(f"{method} {path} failed: {e}") from e

        if missing_ok and response.status_code == 404:
            return response
        if response.status_code >= 500 or response.status_code in _UNAVAILABLE_STATUSES:
            raise PersistenceUnavailable(f"{method} {path} returned HTTP {response.status_code}")
        return response

    @staticmethod
    def _payload(response: requests.Response):
        try:
            body = response.json()
        except ValueError as e:
            raise PersistenceUnavailable(f"Remote store sent a non-JSON response: {e}") from e
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    def list(self, operator_id: str) -> List[SavedItinerary]:
        response = self._request("GET", "/saved-itineraries", params={"operator_id": operator_id})
        if not response.ok:
            raise PersistenceUnavailable(f"Listing itineraries failed with HTTP {response.status_code}")
        items = self._payload(response) or []
        return [SavedItinerary.from_dict(item, storage=STORAGE_REMOTE) for item in items]

    def create(self, operator_id: str, name: str, itinerary: Itinerary, created_at: str) -> SavedItinerary:
        payload = {
            "operator_id": operator_id,
            "name": name,
            "itinerary": itinerary.to_dict(),
            "created_at": created_at,
        }
        response = self._request("POST", "/saved-itineraries", json=payload)
        if response.status_code == 400:
            raise ValidationError(f"Remote store rejected itinerary '{name}': {response.text}")
        if not response.ok:
            raise PersistenceUnavailable(f"Creating itinerary failed with HTTP {response.status_code}")
        data = self._payload(response) or {}
        data.setdefault("name", name)
        data.setdefault("itinerary", payload["itinerary"])
        data.setdefault("created_at", created_at)
        if "id" not in data:
            raise PersistenceUnavailable("Remote store did not return an id")
        return SavedItinerary.from_dict(data, storage=STORAGE_REMOTE)

    def delete(self, operator_id: str, itinerary_id: str) -> None:
        response = self._request("DELETE", f"/saved-itineraries/{itinerary_id}", missing_ok=True,
                                 params={"operator_id": operator_id})
        if response.status_code == 404:
            logger.debug(f"Itinerary {itinerary_id} already absent from remote store")
            return
        if not response.ok:
            raise PersistenceUnavailable(f"Deleting itinerary failed with HTTP {response.status_code}")


class LocalItineraryStore:
    """Saved itineraries kept in the local store under one key per operator."""

    def __init__(self, store: LocalStore):
        self.store = store

    @staticmethod
    def _key(operator_id: str) -> str:
        return f"saved-itineraries:{operator_id}"

    def _read(self, operator_id: str) -> List[dict]:
        try:
            items = self.store.get(self._key(operator_id))
        except CorruptEntry as e:
            logger.error(f"Local saved itineraries for {operator_id} are corrupt: {e}")
            return []
        except StoreUnavailable as e:
            logger.warning(f"Local itinerary store unavailable: {e}")
            return []
        return items if isinstance(items, list) else []

    def list(self, operator_id: str) -> List[SavedItinerary]:
        saved = []
        for item in self._read(operator_id):
            try:
                saved.append(SavedItinerary.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed local itinerary: {e}")
        return saved

    def upsert(self, operator_id: str, saved: SavedItinerary) -> None:
        items = [item for item in self._read(operator_id) if str(item.get("id")) != saved.id]
        items.append(saved.to_dict())
        self.store.set(self._key(operator_id), items)

    def delete(self, operator_id: str, itinerary_id: str) -> bool:
        items = self._read(operator_id)
        remaining = [item for item in items if str(item.get("id")) != itinerary_id]
        if len(remaining) == len(items):
            return False
        self.store.set(self._key(operator_id), remaining)
        return True


class ItineraryRepository:
    """CRUD of named itineraries for one operator.

    The remote store is tried first; when it is unreachable (or absent from
    this deployment) every operation is served from the local store.
    Remote results are mirrored locally as a backup.
    """

    def __init__(self, operator_id: str, remote: Optional[RemoteItineraryStore], local: LocalItineraryStore):
        self.operator_id = operator_id
        self.remote = remote
        self.local = local

    def _remote_enabled(self) -> bool:
        return self.remote is not None and self.remote.configured

    def list(self) -> List[SavedItinerary]:
        """Saved itineraries, newest first."""
        local_items = self.local.list(self.operator_id)
        if self._remote_enabled():
            try:
                remote_items = self.remote.list(self.operator_id)
                pending = [s for s in local_items if s.pending_sync]
                known = {s.id for s in remote_items}
                items = remote_items + [s for s in pending if s.id not in known]
                logger.info(f"Loaded {len(remote_items)} remote itineraries (+{len(pending)} pending)")
                return _newest_first(items)
            except PersistenceUnavailable as e:
                logger.warning(f"Remote itinerary store unavailable, using local store: {e}")
        logger.info(f"Loaded {len(local_items)} itineraries from local store")
        return _newest_first(local_items)

    def create(self, name: str, itinerary: Itinerary) -> SavedItinerary:
        """Save ``itinerary`` under ``name``.

        Raises:
            ValidationError: blank name
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Itinerary name is required")

        created_at = utc_now_iso()
        if self._remote_enabled():
            try:
                saved = self.remote.create(self.operator_id, name, itinerary, created_at)
                self._mirror(saved)
                logger.info(f"Saved itinerary '{name}' to remote store ({saved.id})")
                return saved
            except PersistenceUnavailable as e:
                logger.warning(f"Remote save failed, using local store: {e}")

        saved = SavedItinerary(
            id=uuid.uuid4().hex,
            name=name,
            itinerary=itinerary,
            created_at=created_at,
            storage=STORAGE_LOCAL,
            pending_sync=self._remote_enabled(),
        )
        try:
            self.local.upsert(self.operator_id, saved)
        except StoreUnavailable as e:
            raise PersistenceUnavailable(f"No store available to save '{name}': {e}") from e
        logger.info(f"Saved itinerary '{name}' to local store ({saved.id})")
        return saved

    def delete(self, itinerary_id: str) -> None:
        """Delete an itinerary; unknown ids are ignored."""
        if self._remote_enabled():
            try:
                self.remote.delete(self.operator_id, itinerary_id)
            except PersistenceUnavailable as e:
                logger.warning(f"Remote delete failed, deleting locally only: {e}")
        try:
            removed = self.local.delete(self.operator_id, itinerary_id)
        except StoreUnavailable as e:
            logger.warning(f"Local delete of {itinerary_id} failed: {e}")
            return
        if removed:
            logger.info(f"Deleted itinerary {itinerary_id} from local store")

    def get(self, itinerary_id: str) -> Optional[SavedItinerary]:
        for saved in self.list():
            if saved.id == itinerary_id:
                return saved
        return None

    def sync_pending(self) -> int:
        """Push itineraries saved locally during an outage to the remote store.

        Entries that were uploaded are replaced locally by their remote copy;
        entries that still fail stay pending for the next attempt.

        Returns:
            Number of itineraries uploaded
        """
        if not self._remote_enabled():
            return 0

        uploaded = 0
        for saved in self.local.list(self.operator_id):
            if not saved.pending_sync:
                continue
            try:
                remote_copy = self.remote.create(self.operator_id, saved.name, saved.itinerary, saved.created_at)
            except PersistenceUnavailable as e:
                logger.warning(f"Sync stopped, remote store unavailable: {e}")
                break
            except ValidationError as e:
                logger.error(f"Remote store rejected pending itinerary '{saved.name}': {e}")
                continue
            self.local.delete(self.operator_id, saved.id)
            self._mirror(remote_copy)
            uploaded += 1

        if uploaded:
            logger.info(f"Synced {uploaded} pending itineraries to the remote store")
        return uploaded

    def _mirror(self, saved: SavedItinerary) -> None:
        try:
            self.local.upsert(self.operator_id, saved)
        except StoreUnavailable as e:
            logger.warning(f"Could not mirror itinerary {saved.id} locally: {e}")


def _newest_first(items: List[SavedItinerary]) -> List[SavedItinerary]:
    return sorted(items, key=lambda s: s.created_at, reverse=True)


def build_repository(operator_id: str, store: LocalStore,
                     session: Optional[requests.Session] = None) -> ItineraryRepository:
    cfg = get_persistence_config()
    remote = None
    if cfg["base_url"]:
        remote = RemoteItineraryStore(cfg["base_url"], cfg["token"], session=session, timeout=cfg["timeout"])
    else:
        logger.info("No remote itinerary store configured; saved itineraries stay local")
    return ItineraryRepository(operator_id, remote, LocalItineraryStore(store))


__all__ = [
    "RemoteItineraryStore",
    "LocalItineraryStore",
    "ItineraryRepository",
    "build_repository",
]
