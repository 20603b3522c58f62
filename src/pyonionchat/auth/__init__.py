from __future__ import annotations

from .session import PushChannel, SessionManager
from .state import SessionState, SessionStateChanged, SessionStore
from .store import FileSessionStore, MemorySessionStore

__all__ = [
    "FileSessionStore",
    "MemorySessionStore",
    "PushChannel",
    "SessionManager",
    "SessionState",
    "SessionStateChanged",
    "SessionStore",
]
