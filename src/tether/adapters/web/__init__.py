"""Web adapter for REST and SSE endpoints.

This module provides FastAPI-based endpoints for starting and supervising
conversations, resolving permission requests and streaming run events.
"""

from tether.adapters.web.server import ErrorResponse, WebAdapter, create_web_adapter

__all__ = [
    "ErrorResponse",
    "WebAdapter",
    "create_web_adapter",
]
