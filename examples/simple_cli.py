"""
Simple interactive CLI for pyonionchat.

Demonstrates:
- login / register with session persistence
- listing, creating, joining and leaving rooms
- reading decrypted history and live messages
- sending encrypted messages, reactions and typing indicators
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from pathlib import Path

from pyonionchat import ChatContext, ClientConfig, OnionChatError, SocketConfig
from pyonionchat.cache import ErrorChanged, MessagesChanged, TypingUsersChanged
from pyonionchat.events import ChannelError, ConnectionDown, ConnectionUp


async def _ainput(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


def _short(s: str | None, n: int = 80) -> str:
    if not s:
        return ""
    return s if len(s) <= n else (s[: n - 3] + "...")


HELP = """\
help
login <username> <password>
register <username> <email> <password> [display name]
logout
rooms
create <name> [description]
join <room_id>
select <room_id>
leave <room_id>
delete <room_id>
history [n]
more
members
send <text>
send_file <attachment> [text]
edit <message_id> <text>
rm <message_id>
react <message_id> <emoji>
typing on|off
me
quit"""


async def main() -> None:
    ap = argparse.ArgumentParser(prog="simple_cli.py")
    ap.add_argument("--api", default="http://localhost:3000/api", help="REST base URL")
    ap.add_argument("--socket", default="http://localhost:3000", help="push channel base URL")
    ap.add_argument(
        "--session",
        default="./session.json",
        help="session token file (default: ./session.json)",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = ClientConfig(
        api_url=args.api,
        socket=SocketConfig(url=args.socket),
        session_path=Path(args.session).expanduser().resolve(),
    )

    async with ChatContext(config) as ctx:
        cache = ctx.cache
        seen: dict[str, int] = {}

        async def on_messages(ev: MessagesChanged) -> None:
            if ev.room_id != cache.current_room_id:
                return
            msgs = cache.messages(ev.room_id)
            start = seen.get(ev.room_id, len(msgs))
            for m in msgs[start:]:
                who = m.sender.label if m.sender else (m.sender_id or "?")
                print(f"\n[{m.room_id}] {who}: {_short(m.decrypted_content, 200)}")
            seen[ev.room_id] = len(msgs)

        async def on_typing(ev: TypingUsersChanged) -> None:
            if ev.room_id != cache.current_room_id:
                return
            names = [u.username or u.user_id for u in cache.typing_users(ev.room_id)]
            if names:
                print(f"\n({', '.join(names)} typing...)")

        async def on_error(ev: ErrorChanged) -> None:
            if ev.error:
                print("\nerror:", ev.error)

        cache.events.subscribe(MessagesChanged, on_messages)
        cache.events.subscribe(TypingUsersChanged, on_typing)
        cache.events.subscribe(ErrorChanged, on_error)
        ctx.channel.subscribe(ConnectionUp, lambda ev: print("\nconnection: open"))
        ctx.channel.subscribe(ConnectionDown, lambda ev: print("\nconnection: down", ev.reason))
        ctx.channel.subscribe(ChannelError, lambda ev: print("\nchannel error:", ev.message))

        session = await ctx.start()
        if session is not None:
            print("restored session for", session.user.label)
        else:
            print("not logged in; use `login` or `register`")

        print("\nType `help` for commands.\n")

        while True:
            try:
                line = (await _ainput("> ")).strip()
            except (EOFError, KeyboardInterrupt):
                line = "quit"

            if not line:
                continue

            cmd, *rest = line.split(" ", 1)
            cmd = cmd.lower()
            argstr = rest[0] if rest else ""
            parts = argstr.split() if argstr else []

            if cmd in ("quit", "exit"):
                break

            if cmd == "help":
                print(HELP)
                continue

            try:
                if cmd == "login":
                    if len(parts) != 2:
                        print("usage: login <username> <password>")
                        continue
                    s = await ctx.login(parts[0], parts[1])
                    print("logged in as", s.user.label)
                elif cmd == "register":
                    if len(parts) < 3:
                        print("usage: register <username> <email> <password> [display name]")
                        continue
                    display = " ".join(parts[3:]) or None
                    s = await ctx.register(parts[0], parts[1], parts[2], display)
                    print("registered", s.user.label)
                elif cmd == "logout":
                    await ctx.logout()
                    print("logged out")
                elif cmd == "me":
                    print("me:", ctx.session.user, "state:", ctx.session.state.value)
                elif cmd == "rooms":
                    await cache.load_rooms()
                    for r in cache.rooms:
                        unread = cache.unread_count(r.id)
                        unread_s = f" unread={unread}" if unread else ""
                        print(f"- {r.id} {r.name!r} ({r.visibility}){unread_s}")
                elif cmd == "create":
                    name, *desc = argstr.split(" ", 1) if argstr else [""]
                    if not name:
                        print("usage: create <name> [description]")
                        continue
                    room = await cache.create_room(name, description=desc[0] if desc else None)
                    print("created", room.id)
                elif cmd == "join":
                    if len(parts) != 1:
                        print("usage: join <room_id>")
                        continue
                    room = await cache.join_room(parts[0])
                    print("joined", room.name)
                elif cmd == "select":
                    if len(parts) != 1:
                        print("usage: select <room_id>")
                        continue
                    await cache.select_room(parts[0])
                    seen[parts[0]] = len(cache.messages(parts[0]))
                    room = cache.current_room
                    if room is not None:
                        print(f"now in {room.name!r} ({len(cache.messages())} messages)")
                elif cmd == "leave":
                    if len(parts) != 1:
                        print("usage: leave <room_id>")
                        continue
                    await cache.leave_room(parts[0])
                elif cmd == "delete":
                    if len(parts) != 1:
                        print("usage: delete <room_id>")
                        continue
                    await cache.delete_room(parts[0])
                elif cmd == "history":
                    n = 20
                    if parts:
                        with contextlib.suppress(ValueError):
                            n = int(parts[0])
                    for m in cache.messages()[-n:]:
                        who = m.sender.label if m.sender else (m.sender_id or "?")
                        ts = m.created_at.isoformat() if m.created_at else "-"
                        print(f"- {ts} {m.id} {who}: {_short(m.decrypted_content, 200)!r}")
                elif cmd == "more":
                    rid = cache.current_room_id
                    if rid is None:
                        print("select a room first")
                        continue
                    before = len(cache.messages(rid))
                    await cache.load_more_messages(rid)
                    seen[rid] = len(cache.messages(rid))
                    print(f"loaded {len(cache.messages(rid)) - before} older messages")
                elif cmd == "members":
                    for mem in cache.members():
                        name = mem.user.label if mem.user else mem.user_id
                        online = " (online)" if cache.is_online(mem.user_id) else ""
                        print(f"- {name} [{mem.role}]{online}")
                elif cmd in ("send", "send_file"):
                    rid = cache.current_room_id
                    if rid is None:
                        print("select a room first")
                        continue
                    if cmd == "send":
                        if not argstr:
                            print("usage: send <text>")
                            continue
                        await cache.send_message(rid, argstr)
                    else:
                        if not parts:
                            print("usage: send_file <attachment> [text]")
                            continue
                        text = argstr.split(" ", 1)[1] if len(parts) > 1 else ""
                        await cache.send_message(rid, text, attachments=[parts[0]])
                elif cmd == "edit":
                    rid = cache.current_room_id
                    sub = argstr.split(" ", 1)
                    if rid is None or len(sub) != 2:
                        print("usage: edit <message_id> <text> (in a selected room)")
                        continue
                    await cache.edit_message(rid, sub[0], sub[1])
                elif cmd == "rm":
                    if len(parts) != 1:
                        print("usage: rm <message_id>")
                        continue
                    await cache.delete_message(parts[0])
                elif cmd == "react":
                    if len(parts) != 2:
                        print("usage: react <message_id> <emoji>")
                        continue
                    await cache.add_reaction(parts[0], parts[1])
                elif cmd == "typing":
                    rid = cache.current_room_id
                    if rid is None or parts not in (["on"], ["off"]):
                        print("usage: typing on|off (in a selected room)")
                        continue
                    await cache.send_typing(rid, parts[0] == "on")
                else:
                    print("unknown command; try `help`")
            except OnionChatError as e:
                print("error:", e)


if __name__ == "__main__":
    asyncio.run(main())
