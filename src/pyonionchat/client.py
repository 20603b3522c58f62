from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .api import ChatApi, HttpChatApi
from .auth.session import SessionManager
from .auth.state import SessionState, SessionStateChanged, SessionStore
from .auth.store import FileSessionStore, MemorySessionStore
from .cache import ChatCache
from .constants import DEFAULT_API_URL, DEFAULT_PAGE_SIZE, DEFAULT_TYPING_TIMEOUT_S
from .crypto.engine import CryptoEngine
from .models import Session
from .socket_config import SocketConfig
from .sync import ClientFactory, SyncChannel

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientConfig:
    api_url: str = DEFAULT_API_URL
    socket: SocketConfig = field(default_factory=SocketConfig)
    # `None` keeps the token in memory only.
    session_path: str | Path | None = None
    page_size: int = DEFAULT_PAGE_SIZE
    request_timeout_s: float = 30.0
    typing_timeout_s: float = DEFAULT_TYPING_TIMEOUT_S


class ChatContext:
    """
    Explicit wiring of one chat client: crypto engine, pull API, push channel,
    session manager and cache.

    Build one per process (or per account) and pass it to whatever needs it:

        async with ChatContext(ClientConfig(session_path="~/.onionchat/session.json")) as ctx:
            if await ctx.start() is None:
                await ctx.login("alice", "secret")
            await ctx.cache.select_room(ctx.cache.rooms[0].id)

    The cache is reset whenever the session returns to `anonymous`.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        api: ChatApi | None = None,
        session_store: SessionStore | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        cfg = self.config

        self.crypto = CryptoEngine()
        self.api: ChatApi = api or HttpChatApi(cfg.api_url, timeout_s=cfg.request_timeout_s)
        if session_store is None:
            session_store = (
                FileSessionStore(cfg.session_path)
                if cfg.session_path is not None
                else MemorySessionStore()
            )
        self.channel = SyncChannel(cfg.socket, client_factory=client_factory)
        self.session = SessionManager(self.api, session_store, self.channel)
        self.cache = ChatCache(
            self.api,
            self.channel,
            self.crypto,
            page_size=cfg.page_size,
            typing_timeout_s=cfg.typing_timeout_s,
        )

        self.cache.attach()
        self._session_sub = self.session.events.subscribe(
            SessionStateChanged, self._on_session_state
        )
        self._closed = False

    async def _on_session_state(self, ev: SessionStateChanged) -> None:
        if ev.state is SessionState.ANONYMOUS:
            await self.cache.reset()

    async def start(self) -> Session | None:
        """Warm up the crypto engine and try to restore the stored session."""

        await self.crypto.initialize()
        session = await self.session.restore_session()
        if session is not None:
            await self.cache.load_rooms()
        return session

    async def login(self, username: str, password: str) -> Session:
        session = await self.session.login(username, password)
        await self.cache.load_rooms()
        return session

    async def register(
        self, username: str, email: str, password: str, display_name: str | None = None
    ) -> Session:
        session = await self.session.register(username, email, password, display_name)
        await self.cache.load_rooms()
        return session

    async def logout(self) -> None:
        await self.session.logout()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._session_sub.cancel()
        await self.cache.aclose()
        await self.channel.close()
        logger.debug("chat context closed")

    async def __aenter__(self) -> ChatContext:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
