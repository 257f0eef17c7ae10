"""Conversation memory: per-user windows and an optional durable archive."""

from orgchat.memory.archive import TurnArchive
from orgchat.memory.store import ConversationStore

__all__ = ["ConversationStore", "TurnArchive"]
