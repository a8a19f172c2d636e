# visit_planner/routes/planner.py
"""Planner routes and blueprint configuration."""

import logging

from flask import Blueprint, abort, jsonify, request, session

from visit_planner.api.config import get_google_maps_config
from visit_planner.api.errors import PersistenceUnavailable, ValidationError
from visit_planner.api.models import LocationRecord
from visit_planner.api.position import PositionOptions, ReportedPositionProvider
from visit_planner.api.services.itinerary_service import ConfirmationRequired
from visit_planner.api.services.map_service import MapService

logger = logging.getLogger(__name__)

OPERATOR_HEADER = "X-Operator-Id"


def _operator_id():
    operator_id = request.headers.get(OPERATOR_HEADER) or session.get("operator_id")
    if not operator_id:
        abort(401, description=f"Operator identity missing ({OPERATOR_HEADER} header or session)")
    return operator_id


def _body():
    return request.get_json(silent=True) or {}


def _itinerary_payload(state):
    """Full itinerary view: stops, totals, markers, bounds and the deep link."""
    snapshot = state.snapshot()
    payload = snapshot.to_dict()
    payload["version"] = state.version
    payload["totals"] = state.totals()
    payload["markers"] = MapService.build_markers(snapshot.stops)
    payload["bounds"] = MapService.calculate_bounds(snapshot.stops)
    payload["navigation_url"] = MapService.build_navigation_url([s.address for s in snapshot.stops])
    return payload


def _confirmation(result: ConfirmationRequired):
    return jsonify({
        "confirmation_required": True,
        "action": result.action,
        "message": result.message,
    }), 409


def create_planner_blueprint(registry):
    """Create and configure the planner blueprint.

    Args:
        registry: PlannerRegistry shared by every request

    Returns:
        Configured Flask Blueprint
    """
    planner_bp = Blueprint("planner", __name__, url_prefix="/planner")

    async def current_session():
        return await registry.open(_operator_id())

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------
    @planner_bp.errorhandler(ValidationError)
    def validation_error(e):
        return jsonify({"error": str(e)}), 400

    @planner_bp.errorhandler(PersistenceUnavailable)
    def persistence_error(e):
        logger.error(f"Persistence unavailable: {e}")
        return jsonify({"error": str(e)}), 503

    @planner_bp.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": e.description}), 401

    # ------------------------------------------------------------------
    # Configuration and identity
    # ------------------------------------------------------------------
    @planner_bp.route("/api/config")
    def api_config():
        """Return Google Maps configuration for the map widget."""
        config = get_google_maps_config()
        return jsonify({
            "google_maps_api_key": config["api_key"],
            "google_maps_enabled": bool(config["api_key"]),
            "language": config["language"],
            "region": config["region"],
        })

    @planner_bp.route("/api/session", methods=["POST"])
    def api_session():
        """Remember the operator for cookie-based clients."""
        operator_id = str(_body().get("operator_id") or "").strip()
        if not operator_id:
            raise ValidationError("operator_id is required")
        session["operator_id"] = operator_id
        return jsonify({"operator_id": operator_id})

    @planner_bp.route("/api/locations")
    async def api_locations():
        planner = await current_session()
        return jsonify([record.to_dict() for record in planner.locations()])

    # ------------------------------------------------------------------
    # In-progress itinerary
    # ------------------------------------------------------------------
    @planner_bp.route("/api/itinerary", methods=["GET", "DELETE"])
    async def api_itinerary():
        planner = await current_session()
        if request.method == "DELETE":
            planner.state.clear()
        return jsonify(_itinerary_payload(planner.state))

    @planner_bp.route("/api/itinerary/stops", methods=["POST"])
    async def api_add_stop():
        """Add a stop by directory id (``location_id``) or inline ``location``."""
        planner = await current_session()
        data = _body()
        if data.get("location_id"):
            await planner.add_location(str(data["location_id"]))
        elif isinstance(data.get("location"), dict):
            try:
                record = LocationRecord.from_dict(data["location"])
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid location: {e}")
            await planner.state.add_stop(record)
        else:
            raise ValidationError("location_id or location is required")
        return jsonify(_itinerary_payload(planner.state)), 201

    @planner_bp.route("/api/itinerary/stops/<record_id>", methods=["DELETE"])
    async def api_remove_stop(record_id):
        planner = await current_session()
        await planner.state.remove_stop(record_id)
        return jsonify(_itinerary_payload(planner.state))

    @planner_bp.route("/api/itinerary/stops/<int:index>/move-up", methods=["POST"])
    async def api_move_up(index):
        planner = await current_session()
        await planner.state.move_up(index)
        return jsonify(_itinerary_payload(planner.state))

    @planner_bp.route("/api/itinerary/stops/<int:index>/move-down", methods=["POST"])
    async def api_move_down(index):
        planner = await current_session()
        await planner.state.move_down(index)
        return jsonify(_itinerary_payload(planner.state))

    @planner_bp.route("/api/itinerary/order", methods=["PUT"])
    async def api_reorder():
        planner = await current_session()
        stop_ids = _body().get("stop_ids")
        if not isinstance(stop_ids, list):
            raise ValidationError("stop_ids must be a list")
        by_id = {stop.id: stop for stop in planner.state.stops}
        try:
            new_order = [by_id[str(stop_id)] for stop_id in stop_ids]
        except KeyError as e:
            raise ValidationError(f"Unknown stop {e}")
        await planner.state.replace_order(new_order)
        return jsonify(_itinerary_payload(planner.state))

    @planner_bp.route("/api/itinerary/schedule", methods=["PUT"])
    async def api_schedule():
        planner = await current_session()
        data = _body()
        planner.state.set_schedule(data.get("date"), data.get("time"))
        return jsonify(_itinerary_payload(planner.state))

    @planner_bp.route("/api/itinerary/optimize", methods=["POST"])
    async def api_optimize():
        """Reorder stops from the position the device reported with the request."""
        planner = await current_session()
        data = _body()
        opts = data.get("options") or {}
        try:
            options = PositionOptions(
                high_accuracy=bool(opts.get("high_accuracy", True)),
                timeout_s=float(opts.get("timeout_s", 8)),
                maximum_age_s=float(opts.get("maximum_age_s", 10)),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid position options: {e}")
        result = await planner.state.optimize(ReportedPositionProvider(data.get("position")), options)
        body = {"result": result.to_dict(), "itinerary": _itinerary_payload(planner.state)}
        return jsonify(body), (200 if result.applied else 422)

    @planner_bp.route("/api/itinerary/navigation-link")
    async def api_navigation_link():
        planner = await current_session()
        url = MapService.build_navigation_url(planner.state.addresses(), request.args.get("travelmode"))
        if url is None:
            return jsonify({"error": "The itinerary has no stops"}), 404
        return jsonify({"url": url})

    @planner_bp.route("/api/itinerary/stops/<record_id>/links")
    async def api_stop_links(record_id):
        """Search and directions links for a single stop."""
        planner = await current_session()
        for stop in planner.state.stops:
            if stop.id == record_id:
                return jsonify({
                    "search_url": MapService.build_search_url(stop.address),
                    "directions_url": MapService.build_directions_url(stop.address),
                })
        return jsonify({"error": f"No stop with id {record_id}"}), 404

    @planner_bp.route("/api/itinerary/markers")
    async def api_markers():
        planner = await current_session()
        stops = planner.state.stops
        return jsonify({
            "markers": MapService.build_markers(stops),
            "bounds": MapService.calculate_bounds(stops),
        })

    # ------------------------------------------------------------------
    # Saved itineraries
    # ------------------------------------------------------------------
    @planner_bp.route("/api/saved-itineraries", methods=["GET", "POST"])
    async def api_saved_itineraries():
        planner = await current_session()
        if request.method == "POST":
            saved = planner.promote(str(_body().get("name") or ""))
            return jsonify(saved.to_dict()), 201
        return jsonify([saved.to_dict() for saved in planner.repository.list()])

    @planner_bp.route("/api/saved-itineraries/<itinerary_id>", methods=["DELETE"])
    async def api_delete_saved(itinerary_id):
        planner = await current_session()
        planner.repository.delete(itinerary_id)
        return jsonify({"deleted": itinerary_id})

    @planner_bp.route("/api/saved-itineraries/<itinerary_id>/load", methods=["POST"])
    async def api_load_saved(itinerary_id):
        planner = await current_session()
        result = await planner.load_saved(itinerary_id, confirmed=bool(_body().get("confirmed")))
        if isinstance(result, ConfirmationRequired):
            return _confirmation(result)
        return jsonify(_itinerary_payload(planner.state))

    @planner_bp.route("/api/saved-itineraries/sync", methods=["POST"])
    async def api_sync_saved():
        planner = await current_session()
        return jsonify({"uploaded": planner.repository.sync_pending()})

    @planner_bp.route("/health")
    def health():
        """Health check endpoint."""
        return jsonify({"status": "ok", "service": "planner", **registry.get_stats()})

    return planner_bp


__all__ = ["create_planner_blueprint", "OPERATOR_HEADER"]
