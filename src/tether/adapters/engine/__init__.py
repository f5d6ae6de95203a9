"""Execution engines producing engine-native message streams."""

from .base import AgentEngine
from .scripted import ScriptedEngine, ToolCall, ToolDecision, WaitForCancel, assistant_text

__all__ = [
    "AgentEngine",
    "ScriptedEngine",
    "ToolCall",
    "ToolDecision",
    "WaitForCancel",
    "assistant_text",
]
