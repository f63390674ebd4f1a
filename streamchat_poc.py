"""
======================================================================
 StreamChat Runtime — Version v0.1.0-alpha (Build 2026.10)
Owner: Daniel Clancy
 Copyright © 2026 Brainstream Media Group
======================================================================
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional, Set

from dotenv import load_dotenv

from core.config_loader import load_chat_config
from core.session import ChatIdentity, ChatSession
from runtime.version import as_string
from services.chat.notifications import Notice
from services.chat.view import build_view, insert_emote
from shared.logging.logger import get_logger

log = get_logger("streamchat.poc")

RENDER_INTERVAL_SECONDS = 0.5

HELP = (
    "Local commands: !quit, !retry, !switch <stream_id>, !emote <name> [text], "
    "!timeout <message_id> <seconds>, !ban <message_id>, !delete <message_id>"
)


def _env(key: str) -> str:
    return os.getenv(key, "").strip()


def _print_notice(notice: Notice) -> None:
    marker = {"error": "⚠️", "success": "✅"}.get(notice.level, "ℹ️")
    print(f"{marker} {notice.text}")


class ConsoleRenderer:
    """Prints rows the console has not shown yet."""

    def __init__(self, session: ChatSession):
        self.session = session
        self._shown: Set[str] = set()
        self._last_status: Optional[str] = None

    def reset(self) -> None:
        self._shown.clear()
        self._last_status = None

    def render(self) -> None:
        view = build_view(self.session, notice_limit=0)

        if view.status != self._last_status:
            self._last_status = view.status
            print(f"── {view.stream_id} [{view.status}] viewers={view.viewer_count}")
            if view.error:
                print(f"⚠️ {view.error} (type !retry)")
            print(f"   {view.input.placeholder}")

        for row in view.rows:
            if row.id in self._shown:
                continue
            self._shown.add(row.id)
            print(f"[{row.time}] 💬 {row.author} → {row.text}  ({row.id})")


async def _render_loop(renderer: ConsoleRenderer) -> None:
    while True:
        renderer.render()
        await asyncio.sleep(RENDER_INTERVAL_SECONDS)


async def _handle_local(session: ChatSession, renderer: ConsoleRenderer, line: str) -> bool:
    """Returns False when the POC should exit."""
    parts = line[1:].split()
    if not parts:
        print(HELP)
        return True

    name, args = parts[0].lower(), parts[1:]
    if name == "quit":
        return False
    if name == "retry":
        await session.retry()
    elif name == "switch" and args:
        renderer.reset()
        await session.switch_stream(args[0])
    elif name == "emote" and args:
        await session.send(insert_emote(" ".join(args[1:]), args[0]))
    elif name == "timeout" and len(args) == 2 and args[1].isdigit():
        message = session.store.get(args[0]) if session.store else None
        if message:
            await session.timeout_user(message.user_id, int(args[1]))
        else:
            print("Unknown message id")
    elif name == "ban" and args:
        message = session.store.get(args[0]) if session.store else None
        if message:
            await session.ban_user(message.user_id)
        else:
            print("Unknown message id")
    elif name == "delete" and args:
        await session.delete_message(args[0])
    else:
        print(HELP)
    return True


async def _input_loop(session: ChatSession, renderer: ConsoleRenderer) -> None:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        line = line.strip()
        if not line:
            continue
        if line.startswith("!"):
            if not await _handle_local(session, renderer, line):
                return
            continue
        await session.send(line)


async def _run(args) -> None:
    load_dotenv()

    stream_id = args.stream or _env("STREAMCHAT_STREAM_ID")
    if not stream_id:
        raise RuntimeError("Missing stream id. Provide --stream or set STREAMCHAT_STREAM_ID")

    config_path = Path(args.config) if args.config else None
    config = load_chat_config(path=config_path, require_backend=True)

    user_id = args.user_id or _env("STREAMCHAT_USER_ID")
    identity = None
    if user_id:
        identity = ChatIdentity(
            user_id=user_id,
            username=args.username or _env("STREAMCHAT_USERNAME") or user_id,
            access_token=args.token or _env("STREAMCHAT_ACCESS_TOKEN") or None,
        )

    session = ChatSession.from_config(
        config,
        stream_id=stream_id,
        identity=identity,
        is_live=not args.offline,
    )
    session.notifier.subscribe(_print_notice)
    renderer = ConsoleRenderer(session)

    print(as_string())
    await session.start()
    log.info(f"[{stream_id}] chat POC started; {HELP}")

    render_task = asyncio.create_task(_render_loop(renderer))
    try:
        await _input_loop(session, renderer)
    except asyncio.CancelledError:
        raise
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received, shutting down POC")
    finally:
        render_task.cancel()
        await session.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="StreamChat console client (history, realtime, presence, moderation)"
    )
    parser.add_argument("--stream", help="Stream id to join")
    parser.add_argument("--user-id", help="Chat as this user id (omit to watch anonymously)")
    parser.add_argument("--username", help="Display name for presence")
    parser.add_argument("--token", help="User access token for the backend")
    parser.add_argument("--config", help="Path to chat.json (defaults to shared/config/chat.json)")
    parser.add_argument("--offline", action="store_true", help="Treat the stream as offline")

    args = parser.parse_args()
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
