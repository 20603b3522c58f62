from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from ..api import ChatApi
from ..exceptions import ApiError, AuthError, OnionChatError
from ..models import Session, User
from ..util.events import AsyncEventHub
from .state import SessionState, SessionStateChanged, SessionStore

logger = logging.getLogger(__name__)


class PushChannel(Protocol):
    async def connect(self, token: str) -> None: ...

    async def close(self) -> None: ...


def _reason(e: BaseException) -> str:
    if isinstance(e, ApiError):
        return e.message
    return str(e) or type(e).__name__


class SessionManager:
    """
    Owns the bearer token and the current identity.

    State machine: `anonymous -> authenticating -> authenticated`, with `error`
    reachable from `authenticating`. Every transition decides whether the push
    channel is open: `authenticated` opens it, `anonymous` and `error` close it.
    Nothing else opens or closes the channel.

    Transitions are published on `events` as `SessionStateChanged`.
    """

    def __init__(self, api: ChatApi, store: SessionStore, channel: PushChannel) -> None:
        self.api = api
        self.store = store
        self.channel = channel
        self.events = AsyncEventHub()

        self._state = SessionState.ANONYMOUS
        self._user: User | None = None
        self._token: str | None = None
        self._error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    async def _transition(
        self,
        state: SessionState,
        *,
        user: User | None = None,
        token: str | None = None,
        error: str | None = None,
    ) -> None:
        prev = self._state
        self._state = state
        self._error = error

        if state is SessionState.AUTHENTICATED:
            if token is None:
                raise AuthError("authenticated state requires a token")
            self._user = user
            self._token = token
            self.api.set_token(token)
            await self.channel.connect(token)
        elif state in (SessionState.ANONYMOUS, SessionState.ERROR):
            self._user = None
            self._token = None
            self.api.set_token(None)
            await self.channel.close()

        if prev is not state:
            logger.info("session %s -> %s", prev.value, state.value)
        await self.events.emit(SessionStateChanged(state=state, user=self._user, error=error))

    async def _establish(self, call: Callable[[], Awaitable[Session]]) -> Session:
        async with self._lock:
            if self._state is SessionState.AUTHENTICATED:
                raise AuthError("already authenticated; log out first")
            await self._transition(SessionState.AUTHENTICATING)
            try:
                session = await call()
                await self.store.save(session.token)
            except (OnionChatError, OSError) as e:
                reason = _reason(e)
                await self._transition(SessionState.ERROR, error=reason)
                raise AuthError(reason) from e
            await self._transition(
                SessionState.AUTHENTICATED, user=session.user, token=session.token
            )
            return session

    async def login(self, username: str, password: str) -> Session:
        return await self._establish(lambda: self.api.login(username, password))

    async def register(
        self, username: str, email: str, password: str, display_name: str | None = None
    ) -> Session:
        return await self._establish(
            lambda: self.api.register(username, email, password, display_name)
        )

    async def restore_session(self) -> Session | None:
        """
        Re-enter `authenticated` from the stored token, if there is one.

        A token the server rejects is cleared immediately; it is tried exactly once.
        """

        async with self._lock:
            if self._state is SessionState.AUTHENTICATED and self._user and self._token:
                return Session(token=self._token, user=self._user)
            try:
                token = await self.store.load()
            except AuthError as e:
                logger.warning("discarding unreadable session: %s", e)
                await self.store.clear()
                return None
            if not token:
                return None

            await self._transition(SessionState.AUTHENTICATING)
            self.api.set_token(token)
            try:
                user = await self.api.get_me()
            except OnionChatError as e:
                logger.warning("stored session rejected: %s", _reason(e))
                await self.store.clear()
                await self._transition(SessionState.ANONYMOUS)
                return None
            await self._transition(SessionState.AUTHENTICATED, user=user, token=token)
            return Session(token=token, user=user)

    async def logout(self) -> None:
        """Best-effort server logout; local teardown always completes."""

        async with self._lock:
            if self._token is not None:
                try:
                    await self.api.logout()
                except OnionChatError as e:
                    logger.warning("logout request failed: %s", _reason(e))
            try:
                await self.store.clear()
            except OSError as e:
                logger.warning("failed to clear stored session: %s", e)
            await self._transition(SessionState.ANONYMOUS)
