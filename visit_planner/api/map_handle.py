# visit_planner/api/map_handle.py
"""Provider handles shared by every planner session.

The application creates one ``MapHandle`` at start-up and hands it to the
geocoder and the distance client; the core never builds its own clients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import googlemaps
import requests

from visit_planner.api.config import get_google_maps_config, get_nominatim_config

logger = logging.getLogger(__name__)


@dataclass
class MapHandle:
    """Externally owned provider resources."""

    gmaps: Optional[googlemaps.Client]
    http: requests.Session = field(default_factory=requests.Session)
    language: str = "es"
    region: str = "es"

    @property
    def has_google(self) -> bool:
        return self.gmaps is not None

    def close(self) -> None:
        self.http.close()


def create_map_handle(api_key: Optional[str] = None) -> MapHandle:
    """Build the process-wide MapHandle from configuration.

    A missing or rejected Google key leaves ``gmaps`` unset; geocoding then
    relies on Nominatim and distances on the great-circle estimate.
    """
    cfg = get_google_maps_config()
    key = cfg["api_key"] if api_key is None else api_key

    gmaps = None
    if not key:
        logger.warning("No Google Maps API key configured; using fallback providers only")
    else:
        try:
            logger.info(f"Initializing Google Maps client with key: {key[:10]}...")
            gmaps = googlemaps.Client(key=key, timeout=cfg["timeout"])
        except ValueError as e:
            logger.error(f"Failed to initialize Google Maps client: {e}")

    session = requests.Session()
    session.headers.update({
        "User-Agent": get_nominatim_config()["user_agent"],
        "Accept": "application/json",
    })
    return MapHandle(gmaps=gmaps, http=session, language=cfg["language"], region=cfg["region"])


__all__ = ["MapHandle", "create_map_handle"]
