"""
Conversation thread serialization and session persistence.
"""

from .queue import ThreadMessageQueue
from .store import PersistedSession, SessionStore

__all__ = [
    "ThreadMessageQueue",
    "PersistedSession",
    "SessionStore",
]
