"""API module."""

from reelix.api.routes import router
from reelix.api.websocket import ConnectionManager, manager

__all__ = ["router", "ConnectionManager", "manager"]
