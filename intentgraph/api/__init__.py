"""API module for HTTP routes and the run event stream."""

from intentgraph.api.routes import router
from intentgraph.api.websocket import websocket_router

__all__ = ["router", "websocket_router"]
