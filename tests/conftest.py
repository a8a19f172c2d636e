import time

import pytest
import requests

from visit_planner.api.errors import GeocodingProviderError, PartialLegFailure
from visit_planner.api.geocoding import (
    STATUS_OK,
    STATUS_ZERO_RESULTS,
    GeocodeCache,
    GeocodeCandidate,
    GeocodeResponse,
    Geocoder,
)
from visit_planner.api.models import GeoCoordinate, LocationRecord
from visit_planner.api.routing import DistanceMatrixClient
from visit_planner.api.services.draft_service import DraftStore
from visit_planner.api.services.itinerary_service import ItineraryState
from visit_planner.api.storage import LocalStore


def make_record(record_id, address=None, lat=None, lng=None, **extra):
    coordinate = GeoCoordinate(lat, lng) if lat is not None and lng is not None else None
    return LocationRecord(
        id=record_id,
        label=extra.pop("label", f"Cliente {record_id}"),
        address_lines=(address or f"Calle {record_id} 1, Madrid",),
        coordinate=coordinate,
        **extra,
    )


class FakeGeoProvider:
    """Geocoding provider answering from a dict; records every lookup."""

    def __init__(self, name, answers=None, fail=False, delay=0.0):
        self.name = name
        self.answers = answers or {}
        self.fail = fail
        self.delay = delay
        self.calls = []

    def lookup(self, address):
        self.calls.append(address)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise GeocodingProviderError(f"{self.name} is down")
        coordinate = self.answers.get(address)
        if coordinate is None:
            return GeocodeResponse(STATUS_ZERO_RESULTS)
        return GeocodeResponse(STATUS_OK, [GeocodeCandidate(coordinate, address)])


class FakeDistanceProvider:
    """Distance provider with per-pair (meters, seconds); unknown pairs fail."""

    def __init__(self, legs=None, default=(1000.0, 60.0), failing=()):
        self.legs = legs or {}
        self.default = default
        self.failing = set(failing)
        self.calls = []

    def measure(self, index, origin, destination):
        self.calls.append((origin, destination))
        if (origin, destination) in self.failing:
            raise PartialLegFailure(index, origin, destination, "ZERO_RESULTS")
        return self.legs.get((origin, destination), self.default)


class FakeGmapsClient:
    """Stands in for googlemaps.Client in provider tests."""

    def __init__(self, geocode_results=None, matrix=None, error=None):
        self.geocode_results = geocode_results or []
        self.matrix = matrix
        self.error = error
        self.calls = []

    def geocode(self, address, language=None, region=None):
        self.calls.append(("geocode", address, language, region))
        if self.error:
            raise self.error
        return self.geocode_results

    def distance_matrix(self, origins, destinations, mode=None, language=None):
        self.calls.append(("distance_matrix", origins, destinations, mode, language))
        if self.error:
            raise self.error
        return self.matrix


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """requests.Session look-alike routing (method, path suffix) to canned responses."""

    def __init__(self, routes=None, error=None):
        self.routes = routes or {}
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        for (route_method, suffix), response in self.routes.items():
            if route_method == method and url.endswith(suffix):
                return response(kwargs) if callable(response) else response
        return FakeResponse(404, {"error": "not found"})

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def close(self):
        pass


@pytest.fixture
def store(tmp_path):
    return LocalStore(str(tmp_path / "planner-data"))


@pytest.fixture
def make_geocoder(store):
    def factory(primary=None, secondary=None, operator_id="op-1"):
        return Geocoder(GeocodeCache(store, operator_id), primary, secondary,
                        timeout_s=2.0, batch_delay_s=0.0, default_country="España")
    return factory


@pytest.fixture
def make_state(store, make_geocoder):
    def factory(provider=None, geocoder=None, with_draft=True, operator_id="op-1"):
        geocoder = geocoder or make_geocoder(operator_id=operator_id)
        client = DistanceMatrixClient(provider or FakeDistanceProvider(), geocoder, timeout_s=2.0)
        draft = DraftStore(store, operator_id) if with_draft else None
        return ItineraryState(geocoder, client, draft)
    return factory
