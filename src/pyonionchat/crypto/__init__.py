from __future__ import annotations

from .engine import CryptoEngine, generate_room_key

__all__ = [
    "CryptoEngine",
    "generate_room_key",
]
