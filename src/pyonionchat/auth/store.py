from __future__ import annotations

import asyncio
import contextlib
import json
import os
from pathlib import Path

from ..exceptions import AuthError
from ..util import json as jsonutil

_FILE_LOCKS: dict[Path, asyncio.Lock] = {}


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _FILE_LOCKS.get(path)
    if lock is None:
        lock = asyncio.Lock()
        _FILE_LOCKS[path] = lock
    return lock


def _write_private(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(data)
    # The umask may have widened the mode on some platforms.
    with contextlib.suppress(OSError):
        os.chmod(tmp, 0o600)
    os.replace(tmp, path)


class FileSessionStore:
    """
    Token slot persisted as `{"token": "..."}` in a single JSON file.

    The file is written atomically with mode 0600.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    async def load(self) -> str | None:
        lock = _lock_for(self.path)
        async with lock:
            try:
                raw = await asyncio.to_thread(self.path.read_text, "utf-8")
            except FileNotFoundError:
                return None
        try:
            d = jsonutil.loads(raw)
        except json.JSONDecodeError as e:
            raise AuthError(f"failed to load session from {self.path}: {e}") from e
        if not isinstance(d, dict):
            raise AuthError(f"session file {self.path} did not contain an object")
        token = d.get("token")
        return token if isinstance(token, str) and token else None

    async def save(self, token: str) -> None:
        lock = _lock_for(self.path)
        async with lock:
            await asyncio.to_thread(_write_private, self.path, jsonutil.dumps({"token": token}))

    async def clear(self) -> None:
        lock = _lock_for(self.path)
        async with lock:
            await asyncio.to_thread(self.path.unlink, missing_ok=True)


class MemorySessionStore:
    def __init__(self, token: str | None = None) -> None:
        self.token = token

    async def load(self) -> str | None:
        return self.token

    async def save(self, token: str) -> None:
        self.token = token

    async def clear(self) -> None:
        self.token = None
