# visit_planner/routes/__init__.py
from .planner import create_planner_blueprint
from .websocket import NAMESPACE, register_websocket_handlers

__all__ = ["create_planner_blueprint", "register_websocket_handlers", "NAMESPACE"]
