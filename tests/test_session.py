from __future__ import annotations

import pytest

from pyonionchat.auth import MemorySessionStore, SessionManager, SessionState, SessionStateChanged
from pyonionchat.exceptions import ApiError, AuthError


class RecordingChannel:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []

    async def connect(self, token: str) -> None:
        self.calls.append(("connect", token))

    async def close(self) -> None:
        self.calls.append(("close", None))


def _manager(
    api, token: str | None = None
) -> tuple[SessionManager, MemorySessionStore, RecordingChannel]:
    store = MemorySessionStore(token)
    channel = RecordingChannel()
    return SessionManager(api, store, channel), store, channel


@pytest.mark.asyncio
async def test_login_opens_channel_and_persists_token(api) -> None:
    api.add_user("alice")
    mgr, store, channel = _manager(api)
    states: list[SessionState] = []
    mgr.events.subscribe(SessionStateChanged, lambda ev: states.append(ev.state))

    session = await mgr.login("alice", "secret")

    assert session.token == "tok-alice"
    assert mgr.is_authenticated and mgr.user is not None and mgr.user.username == "alice"
    assert await store.load() == "tok-alice"
    assert api.token == "tok-alice"
    assert channel.calls == [("connect", "tok-alice")]
    assert states == [SessionState.AUTHENTICATING, SessionState.AUTHENTICATED]


@pytest.mark.asyncio
async def test_login_failure_surfaces_server_message(api) -> None:
    api.add_user("alice")
    mgr, store, channel = _manager(api)

    with pytest.raises(AuthError) as exc_info:
        await mgr.login("alice", "wrong")

    assert str(exc_info.value) == "Invalid credentials"
    assert mgr.state is SessionState.ERROR
    assert mgr.error == "Invalid credentials"
    assert mgr.token is None
    assert await store.load() is None
    assert ("connect", "tok-alice") not in channel.calls


@pytest.mark.asyncio
async def test_login_after_error_is_allowed(api) -> None:
    api.add_user("alice")
    mgr, _, _ = _manager(api)
    with pytest.raises(AuthError):
        await mgr.login("alice", "wrong")

    await mgr.login("alice", "secret")

    assert mgr.state is SessionState.AUTHENTICATED
    assert mgr.error is None


@pytest.mark.asyncio
async def test_login_while_authenticated_is_rejected(api) -> None:
    api.add_user("alice")
    mgr, _, channel = _manager(api)
    await mgr.login("alice", "secret")

    with pytest.raises(AuthError):
        await mgr.login("alice", "secret")

    assert mgr.is_authenticated
    assert channel.calls == [("connect", "tok-alice")]


@pytest.mark.asyncio
async def test_register_establishes_session(api) -> None:
    mgr, store, _ = _manager(api)

    session = await mgr.register("bob", "bob@example.com", "pw", "Bob")

    assert session.user.label == "Bob"
    assert await store.load() == "tok-bob"

    mgr2, _, _ = _manager(api)
    with pytest.raises(AuthError, match="Username already exists"):
        await mgr2.register("bob", "bob@example.com", "pw")


@pytest.mark.asyncio
async def test_restore_valid_token(api) -> None:
    api.add_user("alice")
    api.valid_tokens.add("tok-alice")
    mgr, _, channel = _manager(api, "tok-alice")

    session = await mgr.restore_session()

    assert session is not None and session.user.username == "alice"
    assert mgr.is_authenticated
    assert channel.calls == [("connect", "tok-alice")]

    again = await mgr.restore_session()
    assert again is not None and again.token == "tok-alice"
    assert api.calls.count("get_me") == 1


@pytest.mark.asyncio
async def test_restore_stale_token_is_cleared(api) -> None:
    api.add_user("alice")
    mgr, store, channel = _manager(api, "tok-alice")

    assert await mgr.restore_session() is None

    assert mgr.state is SessionState.ANONYMOUS
    assert await store.load() is None
    assert api.token is None
    assert ("connect", "tok-alice") not in channel.calls

    assert await mgr.restore_session() is None
    assert api.calls.count("get_me") == 1


@pytest.mark.asyncio
async def test_restore_without_token_does_not_call_server(api) -> None:
    mgr, _, channel = _manager(api)

    assert await mgr.restore_session() is None
    assert api.calls == []
    assert channel.calls == []


@pytest.mark.asyncio
async def test_logout_completes_even_if_server_fails(api) -> None:
    api.add_user("alice")
    mgr, store, channel = _manager(api)
    await mgr.login("alice", "secret")
    api.fail["logout"] = ApiError("Server unavailable", status=503)

    await mgr.logout()

    assert mgr.state is SessionState.ANONYMOUS
    assert mgr.user is None and mgr.token is None
    assert await store.load() is None
    assert api.token is None
    assert channel.calls[-1] == ("close", None)
