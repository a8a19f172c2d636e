# visit_planner/routes/websocket/base.py
"""Base WebSocket handler with common functionality."""

import logging
from flask import request
from flask_socketio import emit

logger = logging.getLogger(__name__)

NAMESPACE = "/planner/ws"


def operator_room(operator_id):
    """Room every client of one operator joins."""
    return f"operator:{operator_id}"


class BaseWebSocketHandler:
    """Base class for WebSocket handlers with common functionality."""

    def __init__(self, socketio, registry, namespace=NAMESPACE):
        self.socketio = socketio
        self.registry = registry
        self.namespace = namespace

    def emit_to_client(self, event, data, room=None):
        """Emit event to the current client, or to a room."""
        try:
            if room:
                self.socketio.emit(event, data, to=room, namespace=self.namespace)
            else:
                emit(event, data, namespace=self.namespace)
        except Exception as e:
            logger.error(f"Failed to emit {event}: {e}")

    def get_client_info(self):
        return {
            "sid": request.sid,
            "ip": request.remote_addr,
            "origin": request.headers.get("Origin", "unknown"),
        }

    def log_event(self, event_name, data=None):
        sid = request.sid
        if data:
            logger.info(f"[WS] {event_name} - Client: {sid}, Data: {data}")
        else:
            logger.info(f"[WS] {event_name} - Client: {sid}")

    def handle_error(self, error, event_name=""):
        logger.error(f"[WS] Error in {event_name} - Client: {request.sid}, Error: {error}")
        self.emit_to_client("error", {"message": str(error), "event": event_name})
