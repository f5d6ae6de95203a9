# Shared utilities and helpers

from .errors import (
    ConversationNotFoundError,
    EngineExitedError,
    InvalidRequestError,
    PermissionAbandonedError,
    PermissionNotFoundError,
    RunNotFoundError,
    ServicesNotReadyError,
    SystemInitTimeoutError,
    TetherError,
)
from .git import GitError, GitInspector

__all__ = [
    "ConversationNotFoundError",
    "EngineExitedError",
    "GitError",
    "GitInspector",
    "InvalidRequestError",
    "PermissionAbandonedError",
    "PermissionNotFoundError",
    "RunNotFoundError",
    "ServicesNotReadyError",
    "SystemInitTimeoutError",
    "TetherError",
]
