# visit_planner/routes/websocket/__init__.py
"""WebSocket route handlers initialization."""

import logging

from .base import NAMESPACE
from .itinerary import ItineraryHandler

logger = logging.getLogger(__name__)


def register_websocket_handlers(socketio, registry):
    """Register all WebSocket event handlers with SocketIO.

    Args:
        socketio: Flask-SocketIO instance
        registry: PlannerRegistry whose sessions are relayed
    """
    logger.info("Registering WebSocket handlers...")

    try:
        itinerary_handler = ItineraryHandler(socketio, registry, NAMESPACE)

        logger.info(f"Registering itinerary handler for namespace: {NAMESPACE}")
        itinerary_handler.register_handlers()

        logger.info("WebSocket handlers registered successfully")

    except Exception as e:
        logger.error(f"Failed to register WebSocket handlers: {e}")
        logger.exception("WebSocket registration error:")
        raise


__all__ = ["register_websocket_handlers", "NAMESPACE"]
