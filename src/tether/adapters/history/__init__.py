"""Conversation history readers."""

from .base import ConversationMetadata, HistoryReader
from .jsonl import JsonlHistoryReader
from .memory import InMemoryHistoryReader

__all__ = [
    "ConversationMetadata",
    "HistoryReader",
    "InMemoryHistoryReader",
    "JsonlHistoryReader",
]
