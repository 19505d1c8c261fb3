"""API module for HTTP routes and the SSE stream.

This module exposes the FastAPI routers for the onboarding engine.
"""

from api.routes import router
from api.streaming import stream_router

__all__ = ["router", "stream_router"]
