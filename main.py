"""
Visit planner – main application entry point

* Flask app + Socket.IO in threading mode; async views run through Flask's
  async support, one event loop per request.
* Itinerary changes are pushed to the browser on the `/planner/ws` namespace.
"""

import os
import logging

from flask import Flask
from flask_cors import CORS
from flask_socketio import SocketIO
from dotenv import load_dotenv

# --------------------------------------------------------------------------- #
# Environment & logging
# --------------------------------------------------------------------------- #
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# Flask initialisation
# --------------------------------------------------------------------------- #
app = Flask(__name__)

flask_secret_key = os.getenv("FLASK_SECRET_KEY") or os.urandom(32).hex()
if "FLASK_SECRET_KEY" not in os.environ:
    logger.warning("No FLASK_SECRET_KEY found. Generated a temporary key.")
app.secret_key = flask_secret_key

app.config.update(
    SESSION_COOKIE_SECURE=False,
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    PERMANENT_SESSION_LIFETIME=86400,
)

CORS(app, origins="*", supports_credentials=True)

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode="threading",
    logger=True,
    engineio_logger=False,
)
logger.info("Socket.IO initialised (async_mode=threading)")

# --------------------------------------------------------------------------- #
# Shared provider handles & planner sessions
# --------------------------------------------------------------------------- #
from visit_planner.api.config import get_port, get_storage_config  # noqa: E402
from visit_planner.api.map_handle import create_map_handle  # noqa: E402
from visit_planner.api.services.location_directory import build_location_directory  # noqa: E402
from visit_planner.api.services.planner_session import PlannerRegistry  # noqa: E402
from visit_planner.api.storage import LocalStore  # noqa: E402
from visit_planner.routes import NAMESPACE, create_planner_blueprint, register_websocket_handlers  # noqa: E402

map_handle = create_map_handle()
local_store = LocalStore(get_storage_config()["data_dir"])
registry = PlannerRegistry(map_handle, local_store, build_location_directory(map_handle.http))

# --------------------------------------------------------------------------- #
# Blueprints & WebSocket handlers
# --------------------------------------------------------------------------- #
app.register_blueprint(create_planner_blueprint(registry))
register_websocket_handlers(socketio, registry)


@app.route("/debug")
def debug():
    """Simple JSON health endpoint."""
    return {
        "status": "ok",
        "socketio_initialized": True,
        "google_maps": map_handle.has_google,
        "local_store": local_store.available,
        "endpoints": {
            "health": "/planner/health",
            "websocket_namespace": NAMESPACE,
        },
    }


if __name__ == "__main__":
    port = get_port()
    logger.info("Starting visit planner on http://localhost:%d", port)
    socketio.run(app, host="0.0.0.0", port=port, debug=False, allow_unsafe_werkzeug=True)

__all__ = ["app", "socketio"]
