import asyncio

import pytest

from visit_planner.api.errors import RoutingUnavailable, ValidationError
from visit_planner.api.models import GeoCoordinate, Itinerary, LegMetrics, LocationRecord
from visit_planner.api.position import FixedPositionProvider, ReportedPositionProvider
from visit_planner.api.routing import DistanceMatrixClient, RouteMetrics
from visit_planner.api.services.draft_service import DraftStore
from visit_planner.api.services.itinerary_service import ConfirmationRequired, ItineraryState

from conftest import FakeDistanceProvider, FakeGeoProvider, make_record


def run(coro):
    return asyncio.run(coro)


def assert_consistent(state):
    snapshot = state.snapshot()
    assert [s.order for s in snapshot.stops] == list(range(1, len(snapshot.stops) + 1))
    assert snapshot.stops == [] or snapshot.stops[0].leg_distance_km is None
    visible = sum(s.leg_distance_km for s in snapshot.stops if s.leg_distance_km is not None)
    assert snapshot.total_distance_km == pytest.approx(visible)


def build(state, *records):
    async def add_all():
        for record in records:
            await state.add_stop(record)
    run(add_all())
    return state


# --------------------------------------------------------------------------- #
# Structural mutations
# --------------------------------------------------------------------------- #
def test_add_stops_keeps_order_and_totals(make_state):
    state = build(make_state(), make_record("a", lat=0, lng=0), make_record("b", lat=0, lng=1),
                  make_record("c", lat=0, lng=2))

    stops = state.stops
    assert [s.id for s in stops] == ["a", "b", "c"]
    assert [s.leg_distance_km for s in stops] == [None, 1.0, 1.0]
    assert state.snapshot().total_distance_km == 2.0
    assert state.snapshot().total_duration_min == 2.0
    assert_consistent(state)


def test_duplicate_stop_is_rejected(make_state):
    state = build(make_state(), make_record("a", lat=0, lng=0))
    with pytest.raises(ValidationError):
        run(state.add_stop(make_record("a", lat=0, lng=0)))
    assert len(state.stops) == 1


def test_added_stop_without_coordinate_is_geocoded(make_state, make_geocoder):
    geocoder = make_geocoder(primary=FakeGeoProvider("google", {"Calle Real 3, Toledo": GeoCoordinate(39.86, -4.02)}))
    state = make_state(geocoder=geocoder)

    stop = run(state.add_stop(make_record("t", "Calle Real 3, Toledo")))

    assert stop.coordinate == GeoCoordinate(39.86, -4.02)
    assert stop.unresolved is False


def test_unresolvable_stop_is_flagged(make_state):
    stop = run(make_state().add_stop(make_record("x", "Sin dirección conocida")))
    assert stop.coordinate is None
    assert stop.unresolved is True


def test_remove_stop_renumbers(make_state):
    state = build(make_state(), make_record("a", lat=0, lng=0), make_record("b", lat=0, lng=1),
                  make_record("c", lat=0, lng=2))

    assert run(state.remove_stop("b")) is True
    assert [(s.id, s.order) for s in state.stops] == [("a", 1), ("c", 2)]
    assert_consistent(state)


def test_remove_unknown_stop_is_a_noop(make_state):
    state = build(make_state(), make_record("a", lat=0, lng=0))
    version = state.version
    assert run(state.remove_stop("zzz")) is False
    assert state.version == version


def test_removing_last_stop_clears_everything(make_state, store):
    state = build(make_state(), make_record("a", lat=0, lng=0))
    state.set_schedule("2024-05-06", "08:30")

    run(state.remove_stop("a"))

    snapshot = state.snapshot()
    assert snapshot.stops == []
    assert snapshot.total_distance_km == 0
    assert snapshot.scheduled_date is None
    assert DraftStore(store, "op-1").load() is None


def test_move_boundaries_are_noops(make_state):
    state = build(make_state(), make_record("a", lat=0, lng=0), make_record("b", lat=0, lng=1))

    assert run(state.move_up(0)) is False
    assert run(state.move_down(1)) is False
    assert run(state.move_down(0)) is True
    assert [(s.id, s.order) for s in state.stops] == [("b", 1), ("a", 2)]
    assert_consistent(state)


def test_replace_order_requires_a_permutation(make_state):
    state = build(make_state(), make_record("a", lat=0, lng=0), make_record("b", lat=0, lng=1))
    stops = state.stops
    with pytest.raises(ValidationError):
        run(state.replace_order(stops[:1]))
    with pytest.raises(ValidationError):
        run(state.replace_order([stops[0], stops[0]]))


def test_clear_zeroes_totals_and_removes_draft(make_state, store):
    state = build(make_state(), make_record("a", lat=0, lng=0), make_record("b", lat=0, lng=1))
    assert DraftStore(store, "op-1").load() is not None

    state.clear()

    assert state.is_empty()
    assert state.totals()["total_distance_km"] == 0
    assert DraftStore(store, "op-1").load() is None


def test_invalid_schedule_is_rejected(make_state):
    with pytest.raises(ValidationError):
        make_state().set_schedule("06/05/2024", None)
    with pytest.raises(ValidationError):
        make_state().set_schedule(None, "25:99")


# --------------------------------------------------------------------------- #
# Leg metrics
# --------------------------------------------------------------------------- #
def test_partial_leg_failure_totals_sum_known_legs(make_state):
    """Three stops where the second leg cannot be routed."""
    a, b, c = (make_record(x, lat=0, lng=i) for i, x in enumerate("abc"))
    provider = FakeDistanceProvider({(a.address, b.address): (4000.0, 300.0)},
                                    failing=[(b.address, c.address)])
    state = build(make_state(provider=provider), a, b, c)

    stops = state.stops
    assert stops[1].leg_distance_km == 4.0
    assert stops[2].leg_distance_km is None
    assert state.snapshot().total_distance_km == 4.0
    assert state.snapshot().total_duration_min == 5.0


def test_failed_recompute_keeps_consistent_legs(make_state):
    class FlakyClient:
        def __init__(self):
            self.fail = False

        async def compute_legs(self, addresses, known=None):
            if self.fail:
                raise RoutingUnavailable("down")
            legs = [LegMetrics(1.0, 1.0) for _ in addresses[1:]]
            return RouteMetrics.from_legs(legs, "provider")

    client = FlakyClient()
    state = ItineraryState(None, client)
    build(state, make_record("a"), make_record("b"), make_record("c"))
    assert state.snapshot().total_distance_km == 2.0

    client.fail = True
    run(state.remove_stop("b"))

    stops = state.stops
    assert [s.leg_distance_km for s in stops] == [None, None]
    assert state.snapshot().total_distance_km == 0
    assert_consistent(state)


def test_superseded_recompute_is_discarded():
    """A slow recompute for an older order must not overwrite a newer one."""

    class GatedClient:
        def __init__(self):
            self.gate = None
            self.distances = {("A", "B"): 5.0, ("B", "A"): 7.0}

        async def compute_legs(self, addresses, known=None):
            gate = self.gate
            if gate is not None:
                await gate.wait()
            legs = [LegMetrics(self.distances[(o, d)], 1.0) for o, d in zip(addresses, addresses[1:])]
            return RouteMetrics.from_legs(legs, "provider")

    client = GatedClient()
    state = ItineraryState(None, client)
    build(state, make_record("a", "A"), make_record("b", "B"))

    async def scenario():
        client.gate = asyncio.Event()
        slow = asyncio.ensure_future(state.move_down(0))
        for _ in range(5):
            await asyncio.sleep(0)
        gate, client.gate = client.gate, None
        await state.move_up(1)
        gate.set()
        await slow

    run(scenario())

    assert [s.id for s in state.stops] == ["a", "b"]
    assert state.snapshot().total_distance_km == 5.0


def test_listeners_receive_each_change(make_state):
    state = make_state()
    received = []
    unsubscribe = state.subscribe(received.append)

    build(state, make_record("a", lat=0, lng=0))
    unsubscribe()
    build(state, make_record("b", lat=0, lng=1))

    assert len(received) == 1
    assert received[0]["stops"][0]["record"]["id"] == "a"
    assert received[0]["markers"][0]["sequence_number"] == 1


# --------------------------------------------------------------------------- #
# Optimize
# --------------------------------------------------------------------------- #
def test_optimize_starts_from_operator_position(make_state):
    state = build(make_state(), make_record("far", lat=1, lng=1), make_record("near", lat=0, lng=1))

    result = run(state.optimize(FixedPositionProvider(GeoCoordinate(0, 0))))

    assert result.applied and result.changed
    assert [(s.id, s.order) for s in state.stops] == [("near", 1), ("far", 2)]
    assert_consistent(state)

    again = run(state.optimize(FixedPositionProvider(GeoCoordinate(0, 0))))
    assert again.applied and not again.changed


def test_optimize_puts_unplaced_stops_last(make_state):
    state = build(make_state(), make_record("lost", "Sin dirección"), make_record("known", lat=0.5, lng=0.5))

    result = run(state.optimize(FixedPositionProvider(GeoCoordinate(0, 0))))

    assert [s.id for s in state.stops] == ["known", "lost"]
    assert result.unplaced == ("Cliente lost",)


@pytest.mark.parametrize("report, reason", [
    (None, "unsupported"),
    ({"error": {"code": 1, "message": "User denied Geolocation"}}, "permission_denied"),
    ({"error": {"code": 3}}, "timeout"),
])
def test_optimize_is_refused_without_position(make_state, report, reason):
    state = build(make_state(), make_record("a", lat=1, lng=1), make_record("b", lat=0, lng=1))

    result = run(state.optimize(ReportedPositionProvider(report)))

    assert result.applied is False
    assert result.reason == reason
    assert [s.id for s in state.stops] == ["a", "b"]


def test_optimize_needs_two_stops(make_state):
    state = build(make_state(), make_record("a", lat=1, lng=1))
    result = run(state.optimize(FixedPositionProvider(GeoCoordinate(0, 0))))
    assert result.reason == "not_enough_stops"


# --------------------------------------------------------------------------- #
# Drafts and loading
# --------------------------------------------------------------------------- #
def test_draft_is_restored_in_a_new_session(make_state):
    first = make_state()
    build(first, make_record("a", lat=0, lng=0), make_record("b", lat=0, lng=1))
    first.set_schedule("2024-05-06", "09:00")

    second = make_state()
    assert run(second.restore_draft()) is True

    snapshot = second.snapshot()
    assert [s.id for s in snapshot.stops] == ["a", "b"]
    assert snapshot.scheduled_date == "2024-05-06"
    assert snapshot.total_distance_km == first.snapshot().total_distance_km


def test_draft_is_not_restored_over_current_work(make_state):
    build(make_state(), make_record("a", lat=0, lng=0))
    busy = build(make_state(), make_record("z", lat=5, lng=5))
    assert run(busy.restore_draft()) is False
    assert [s.id for s in busy.stops] == ["z"]


def test_loading_over_current_work_needs_confirmation(make_state):
    state = build(make_state(), make_record("a", lat=0, lng=0))
    other = build(make_state(with_draft=False), make_record("x", lat=1, lng=1),
                  make_record("y", lat=1, lng=2)).snapshot()

    result = run(state.load_itinerary(other))
    assert isinstance(result, ConfirmationRequired)
    assert [s.id for s in state.stops] == ["a"]

    loaded = run(state.load_itinerary(other, confirmed=True))
    assert isinstance(loaded, Itinerary)
    assert [s.id for s in state.stops] == ["x", "y"]
    assert_consistent(state)


def test_loaded_stops_without_coordinates_are_resolved(make_state, make_geocoder):
    geocoder = make_geocoder(primary=FakeGeoProvider("google", {"Plaza Mayor 1, Salamanca": GeoCoordinate(40.96, -5.66)}))
    state = make_state(geocoder=geocoder)
    source = build(make_state(with_draft=False, geocoder=make_geocoder(operator_id="other")),
                   make_record("s", "Plaza Mayor 1, Salamanca"))

    run(state.load_itinerary(source.snapshot()))

    assert state.stops[0].coordinate == GeoCoordinate(40.96, -5.66)


def test_coordinate_only_stops_get_estimated_legs():
    records = [LocationRecord(id=x, label=x, coordinate=GeoCoordinate(0, i)) for i, x in enumerate("abc")]
    state = build(ItineraryState(None, DistanceMatrixClient(None)), *records)

    stops = state.stops
    assert [s.leg_distance_km is not None for s in stops] == [False, True, True]
    assert state.snapshot().total_distance_km == pytest.approx(222.39, abs=0.1)
    assert state.snapshot().routing_source == "estimate"


def test_late_geocode_reaches_draft_and_listeners(store):
    """A coordinate found after a newer edit already recomputed is still saved and broadcast."""

    class SlowGeocoder:
        def __init__(self):
            self.gate = None

        async def resolve_record(self, record):
            await self.gate.wait()
            return GeoCoordinate(1, 1), True

    geocoder = SlowGeocoder()
    state = ItineraryState(geocoder, DistanceMatrixClient(FakeDistanceProvider()), DraftStore(store, "op-1"))
    received = []
    state.subscribe(received.append)

    async def scenario():
        geocoder.gate = asyncio.Event()
        slow = asyncio.ensure_future(state.add_stop(make_record("a", "Calle Lenta 1")))
        for _ in range(5):
            await asyncio.sleep(0)
        await state.add_stop(make_record("b", lat=0, lng=0))
        geocoder.gate.set()
        await slow

    run(scenario())

    assert state.stops[0].coordinate == GeoCoordinate(1, 1)
    draft = DraftStore(store, "op-1").load()
    assert draft.stops[0].coordinate == GeoCoordinate(1, 1)
    assert [m["id"] for m in received[-1]["markers"]] == ["a", "b"]
