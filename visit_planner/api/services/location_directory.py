# visit_planner/api/services/location_directory.py
"""Read-only access to the external customer directory."""

import logging
from typing import Dict, Iterable, List, Optional

import requests

from visit_planner.api.config import get_location_directory_config
from visit_planner.api.models import LocationRecord

logger = logging.getLogger(__name__)


class LocationDirectory:
    """Interface: the locations an operator is allowed to visit."""

    def list_for_operator(self, operator_id: str) -> List[LocationRecord]:
        raise NotImplementedError

    def get(self, operator_id: str, record_id: str) -> Optional[LocationRecord]:
        for record in self.list_for_operator(operator_id):
            if record.id == record_id:
                return record
        return None


class StaticLocationDirectory(LocationDirectory):
    """Directory backed by an in-memory list (demo data, tests)."""

    def __init__(self, records: Iterable[LocationRecord] = (), by_operator: Optional[Dict[str, List[LocationRecord]]] = None):
        self.records = list(records)
        self.by_operator = by_operator or {}

    def list_for_operator(self, operator_id: str) -> List[LocationRecord]:
        return list(self.by_operator.get(operator_id, self.records))


class HttpLocationDirectory(LocationDirectory):
    """Directory served by the customer system over HTTP.

    Expects ``GET {base_url}/customers?operator_id=..`` to return a list (or
    ``{"data": [...]}``) of customer objects.
    """

    def __init__(self, base_url: str, token: str = "", *, session: Optional[requests.Session] = None,
                 timeout: float = 8.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def list_for_operator(self, operator_id: str) -> List[LocationRecord]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        response = self.session.get(
            f"{self.base_url}/customers",
            params={"operator_id": operator_id},
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        body = response.json()
        items = body.get("data", []) if isinstance(body, dict) else body

        records = []
        for item in items or []:
            try:
                records.append(LocationRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed customer record: {e}")
        logger.info(f"Loaded {len(records)} locations for operator {operator_id}")
        return records


def build_location_directory(session: Optional[requests.Session] = None) -> LocationDirectory:
    cfg = get_location_directory_config()
    if not cfg["base_url"]:
        logger.warning("No location directory configured; the location list is empty")
        return StaticLocationDirectory()
    return HttpLocationDirectory(cfg["base_url"], cfg["token"], session=session, timeout=cfg["timeout"])


__all__ = ["LocationDirectory", "StaticLocationDirectory", "HttpLocationDirectory", "build_location_directory"]
