"""Persistent storage layer.

This package provides storage for per-conversation bookkeeping that lives
outside the engine's own transcript history.
"""

from tether.storage.session_info import (
    InMemorySessionInfoStore,
    SessionInfoBackend,
    SessionInfoStore,
)

__all__ = ["InMemorySessionInfoStore", "SessionInfoBackend", "SessionInfoStore"]
