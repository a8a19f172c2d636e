# visit_planner/routes/websocket/itinerary.py
"""Live itinerary updates pushed to every client of an operator."""

import asyncio
import logging
import threading

from flask import request, session
from flask_socketio import join_room, leave_room

from visit_planner.api.errors import ValidationError
from visit_planner.routes.planner import OPERATOR_HEADER

from .base import BaseWebSocketHandler, NAMESPACE, operator_room

logger = logging.getLogger(__name__)


class ItineraryHandler(BaseWebSocketHandler):
    """Relays ItineraryState changes as ``itinerary_updated`` events.

    One state listener is registered per operator, however many browser tabs
    or phones that operator has connected.
    """

    def __init__(self, socketio, registry, namespace=NAMESPACE):
        super().__init__(socketio, registry, namespace)
        self._watched = {}
        self._lock = threading.Lock()

    def _operator_from(self, data):
        data = data if isinstance(data, dict) else {}
        return (
            data.get("operator_id")
            or request.headers.get(OPERATOR_HEADER)
            or session.get("operator_id")
        )

    def watch(self, planner):
        """Subscribe once to the operator's itinerary and fan changes out to its room."""
        operator_id = planner.operator_id
        room = operator_room(operator_id)
        with self._lock:
            watched = self._watched.get(operator_id)
            if watched is not None and watched[0] is planner.state:
                return
            if watched is not None:
                watched[1]()

            def relay(payload):
                self.socketio.emit("itinerary_updated", payload, to=room, namespace=self.namespace)

            self._watched[operator_id] = (planner.state, planner.state.subscribe(relay))
        logger.info(f"Relaying itinerary updates for operator {operator_id}")

    def register_handlers(self):
        """Register itinerary-related event handlers."""

        @self.socketio.on("connect", namespace=self.namespace)
        def handle_connect(auth=None):
            self.log_event("connect")
            self.emit_to_client("connected", {"sid": request.sid})

        @self.socketio.on("disconnect", namespace=self.namespace)
        def handle_disconnect(*args):
            self.log_event("disconnect")

        @self.socketio.on("join_itinerary", namespace=self.namespace)
        def handle_join(data=None):
            """Join the operator's room and receive the current itinerary."""
            self.log_event("join_itinerary", data)
            try:
                operator_id = self._operator_from(data)
                if not operator_id:
                    raise ValidationError("Operator identity missing")
                planner = asyncio.run(self.registry.open(operator_id))
                join_room(operator_room(operator_id), namespace=self.namespace)
                self.watch(planner)

                payload = planner.state.snapshot().to_dict()
                payload["markers"] = planner.state.markers()
                self.emit_to_client("itinerary_updated", payload)
            except Exception as e:
                self.handle_error(e, "join_itinerary")

        @self.socketio.on("leave_itinerary", namespace=self.namespace)
        def handle_leave(data=None):
            self.log_event("leave_itinerary", data)
            operator_id = self._operator_from(data)
            if operator_id:
                leave_room(operator_room(operator_id), namespace=self.namespace)
