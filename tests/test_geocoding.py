import asyncio
import threading

import googlemaps
import pytest
import requests

from visit_planner.api.errors import GeocodingProviderError
from visit_planner.api.geocoding import GeocodeCache, Geocoder, GoogleGeocodingProvider, NominatimProvider
from visit_planner.api.models import GeoCoordinate

from conftest import FakeGeoProvider, FakeGmapsClient, FakeResponse, FakeSession, make_record

MADRID = GeoCoordinate(40.4168, -3.7038)
SEVILLA = GeoCoordinate(37.3891, -5.9845)


def test_cache_hit_skips_providers(make_geocoder):
    primary = FakeGeoProvider("google")
    geocoder = make_geocoder(primary=primary)
    geocoder.cache.put("Calle Mayor 1, Madrid", MADRID)

    assert asyncio.run(geocoder.resolve("Calle Mayor 1, Madrid")) == MADRID
    assert primary.calls == []


def test_falls_back_to_secondary_and_caches(make_geocoder):
    primary = FakeGeoProvider("google", fail=True)
    secondary = FakeGeoProvider("nominatim", {"Calle Sierpes 5, Sevilla": SEVILLA})
    geocoder = make_geocoder(primary=primary, secondary=secondary)

    assert asyncio.run(geocoder.resolve("Calle Sierpes 5, Sevilla")) == SEVILLA
    assert geocoder.cache.get("Calle Sierpes 5, Sevilla") == SEVILLA

    # second call is served from the cache
    asyncio.run(geocoder.resolve("Calle Sierpes 5, Sevilla"))
    assert len(primary.calls) == 1
    assert len(secondary.calls) == 1


def test_unresolvable_address_returns_none(make_geocoder):
    geocoder = make_geocoder(FakeGeoProvider("google"), FakeGeoProvider("nominatim"))
    assert asyncio.run(geocoder.resolve("Nowhere 0")) is None
    assert geocoder.cache.get("Nowhere 0") is None


def test_blank_address_is_not_looked_up(make_geocoder):
    primary = FakeGeoProvider("google")
    geocoder = make_geocoder(primary=primary)
    assert asyncio.run(geocoder.resolve("   ")) is None
    assert primary.calls == []


def test_concurrent_resolutions_share_one_lookup(make_geocoder):
    primary = FakeGeoProvider("google", {"Gran Via 1, Madrid": MADRID}, delay=0.1)
    geocoder = make_geocoder(primary=primary)

    async def both():
        return await asyncio.gather(
            geocoder.resolve("Gran Via 1, Madrid"),
            geocoder.resolve("Gran Via 1, Madrid"),
        )

    assert asyncio.run(both()) == [MADRID, MADRID]
    assert primary.calls == ["Gran Via 1, Madrid"]


def test_resolutions_on_separate_event_loops_share_one_lookup(make_geocoder):
    primary = FakeGeoProvider("google", {"Gran Via 1, Madrid": MADRID}, delay=0.3)
    geocoder = make_geocoder(primary=primary)
    results = []

    def worker():
        results.append(asyncio.run(geocoder.resolve("Gran Via 1, Madrid")))

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [MADRID, MADRID]
    assert primary.calls == ["Gran Via 1, Madrid"]


def test_resolve_many_deduplicates(make_geocoder):
    primary = FakeGeoProvider("google", {"A": MADRID, "B": SEVILLA})
    geocoder = make_geocoder(primary=primary)

    results = asyncio.run(geocoder.resolve_many(["A", "B", "A", "C"]))

    assert results == {"A": MADRID, "B": SEVILLA, "C": None}
    assert primary.calls == ["A", "B", "C"]


def test_known_coordinate_wins_over_geocoding(make_geocoder):
    primary = FakeGeoProvider("google", {"Calle 1, Madrid": SEVILLA})
    geocoder = make_geocoder(primary=primary)
    record = make_record("r1", "Calle 1, Madrid", lat=MADRID.lat, lng=MADRID.lng)

    coordinate, attempted = asyncio.run(geocoder.resolve_record(record))

    assert coordinate == MADRID
    assert attempted is False
    assert primary.calls == []


def test_record_falls_back_to_city_then_province(make_geocoder):
    primary = FakeGeoProvider("google", {"Sevilla, España": SEVILLA})
    geocoder = make_geocoder(primary=primary)
    record = make_record("r1", "Polígono Sur nave 9", city="Dos Hermanas", province="Sevilla")

    coordinate, attempted = asyncio.run(geocoder.resolve_record(record))

    assert coordinate == SEVILLA
    assert attempted is True
    assert primary.calls == [
        "Polígono Sur nave 9",
        "Dos Hermanas, Sevilla, España",
        "Sevilla, España",
    ]


def test_corrupt_cache_is_a_miss(store, make_geocoder):
    primary = FakeGeoProvider("google", {"A": MADRID})
    geocoder = make_geocoder(primary=primary)
    with open(store._path_for(geocoder.cache.key), "w") as f:
        f.write("{not json")

    assert geocoder.cache.get("A") is None
    assert asyncio.run(geocoder.resolve("A")) == MADRID


def test_cache_without_store_never_raises():
    cache = GeocodeCache(None)
    cache.put("A", MADRID)
    assert cache.get("A") is None


def test_google_provider_skips_to_first_candidate_with_location():
    client = FakeGmapsClient(geocode_results=[
        {"formatted_address": "Madrid", "geometry": {"location": {"lat": 40.4168, "lng": -3.7038}}},
    ])
    response = GoogleGeocodingProvider(client, language="es", region="es").lookup("Madrid")

    assert response.ok
    assert response.candidates[0].coordinate == MADRID
    assert client.calls == [("geocode", "Madrid", "es", "es")]


def test_google_provider_converts_api_errors():
    client = FakeGmapsClient(error=googlemaps.exceptions.ApiError("OVER_QUERY_LIMIT"))
    with pytest.raises(GeocodingProviderError):
        GoogleGeocodingProvider(client).lookup("Madrid")


def test_google_provider_zero_results():
    assert not GoogleGeocodingProvider(FakeGmapsClient()).lookup("Atlantis").ok


def test_nominatim_provider_parses_string_coordinates():
    session = FakeSession({
        ("GET", "/search"): FakeResponse(200, [{"lat": "37.3891", "lon": "-5.9845", "display_name": "Sevilla"}]),
    })
    provider = NominatimProvider(session, "https://nominatim.example", email="ops@example.com")

    response = provider.lookup("Sevilla")

    assert response.candidates[0].coordinate == SEVILLA
    params = session.calls[0][2]["params"]
    assert params == {"format": "json", "q": "Sevilla", "limit": 1, "email": "ops@example.com"}


def test_nominatim_provider_converts_transport_errors():
    session = FakeSession(error=requests.ConnectionError("offline"))
    with pytest.raises(GeocodingProviderError):
        NominatimProvider(session, "https://nominatim.example").lookup("Sevilla")


@pytest.fixture
def recorded_sleeps(monkeypatch):
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays


def test_resolve_many_pauses_only_between_network_lookups(store, recorded_sleeps):
    primary = FakeGeoProvider("google", {"A": MADRID, "C": SEVILLA})
    geocoder = Geocoder(GeocodeCache(store, "op-1"), primary, batch_delay_s=0.35)
    geocoder.cache.put("B", MADRID)

    asyncio.run(geocoder.resolve_many(["A", "B", "A", "C"]))

    assert primary.calls == ["A", "C"]
    assert recorded_sleeps == [0.35]


def test_resolve_records_pauses_between_records_needing_the_network(store, recorded_sleeps):
    primary = FakeGeoProvider("google", {"Calle 1": MADRID, "Calle 3": SEVILLA})
    geocoder = Geocoder(GeocodeCache(store, "op-1"), primary, batch_delay_s=0.5)
    records = [
        make_record("r1", "Calle 1"),
        make_record("r2", "Calle 2", lat=1, lng=1),
        make_record("r3", "Calle 3"),
        make_record("r4", "Calle 4"),
    ]

    results = asyncio.run(geocoder.resolve_records(records))

    assert results["r1"] == MADRID and results["r3"] == SEVILLA and results["r4"] is None
    assert results["r2"] == GeoCoordinate(1, 1)
    assert recorded_sleeps == [0.5, 0.5]


def test_slow_primary_counts_as_failure(store):
    primary = FakeGeoProvider("google", {"A": MADRID}, delay=0.5)
    secondary = FakeGeoProvider("nominatim", {"A": SEVILLA})
    geocoder = Geocoder(GeocodeCache(store, "op-1"), primary, secondary, timeout_s=0.05)

    assert asyncio.run(geocoder.resolve("A")) == SEVILLA


def test_every_provider_timing_out_leaves_address_unresolved(store):
    primary = FakeGeoProvider("google", {"A": MADRID}, delay=0.5)
    secondary = FakeGeoProvider("nominatim", {"A": SEVILLA}, delay=0.5)
    geocoder = Geocoder(GeocodeCache(store, "op-1"), primary, secondary, timeout_s=0.05)

    assert asyncio.run(geocoder.resolve("A")) is None
    assert geocoder.cache.get("A") is None
