from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Protocol

from ..models import User


class SessionState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SessionStateChanged:
    state: SessionState
    user: User | None = None
    error: str | None = None


class SessionStore(Protocol):
    """Durable single-slot storage for the bearer token."""

    async def load(self) -> str | None: ...

    async def save(self, token: str) -> None: ...

    async def clear(self) -> None: ...
