"""Command line front end: list conversations, tail one, or send a message."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Optional, TextIO

from .config import SyncConfig, load_config
from .connection import ConnectionState
from .errors import ChatSyncError, SendFailed
from .logging_config import configure_logging
from .models import Message, MessageStatus, UserIdentity
from .session import TOPIC_MESSAGES, TOPIC_STATUS, TOPIC_TYPING, ChatSession

ENV_CREDENTIAL = "CHAT_SYNC_CREDENTIAL"
ENV_USER_ID = "CHAT_SYNC_USER_ID"


def _format_message(session: ChatSession, message: Message) -> str:
    marker = ""
    if message.status is MessageStatus.PENDING:
        marker = " (sending)"
    elif message.status is MessageStatus.FAILED:
        marker = " (failed)"
    readers = [r.user_id for r in message.read_by if r.user_id != message.sender_id]
    seen = f" [seen by {', '.join(session.name_of(u) for u in readers)}]" if readers else ""
    return f"{session.name_of(message.sender_id)}: {message.content}{marker}{seen}"


async def _connect(session: ChatSession, config: SyncConfig, output: TextIO) -> bool:
    await session.start()
    try:
        await session.connection.wait_for(ConnectionState.READY, timeout=config.connect_timeout_s)
    except asyncio.TimeoutError:
        output.write(f"{session.banner() or 'not connected'}\n")
        return False
    return True


async def _run_list(session: ChatSession, output: TextIO) -> int:
    for conversation in session.conversations():
        unread = session.unread(conversation.conversation_id)
        badge = f" ({unread})" if unread else ""
        name = session.conversation_list.display_name(conversation)
        output.write(f"{conversation.conversation_id}  {name}{badge}\n")
    return 0


async def _run_send(session: ChatSession, conversation_id: str, content: str, timeout_s: float, output: TextIO) -> int:
    await session.open_conversation(conversation_id)
    settled = asyncio.Event()
    sent = await session.send_message(conversation_id, content)

    def _check(topic: str, changed: Optional[str]) -> None:
        if topic != TOPIC_MESSAGES or changed != conversation_id:
            return
        for message in session.messages(conversation_id):
            if message.temp_id == sent.temp_id and message.status is not MessageStatus.PENDING:
                settled.set()

    session.on_change(_check)
    _check(TOPIC_MESSAGES, conversation_id)
    try:
        await asyncio.wait_for(settled.wait(), timeout=timeout_s)
    except asyncio.TimeoutError:
        raise SendFailed(sent.temp_id, "still pending") from None
    for message in session.messages(conversation_id):
        if message.temp_id == sent.temp_id:
            output.write(_format_message(session, message) + "\n")
            if not message.confirmed:
                raise SendFailed(sent.temp_id, "gateway unreachable")
            return 0
    raise SendFailed(sent.temp_id, "dropped from the timeline")


async def _run_tail(session: ChatSession, conversation_id: str, output: TextIO) -> int:
    history = await session.open_conversation(conversation_id)
    printed = set()
    for message in history:
        output.write(_format_message(session, message) + "\n")
        printed.add(message.message_id)

    def _on_change(topic: str, changed: Optional[str]) -> None:
        if topic == TOPIC_MESSAGES and changed == conversation_id:
            for message in session.messages(conversation_id):
                if message.confirmed and message.message_id not in printed:
                    printed.add(message.message_id)
                    output.write(_format_message(session, message) + "\n")
        elif topic == TOPIC_TYPING and changed == conversation_id:
            names = session.typing_names(conversation_id)
            if names:
                output.write(f"... {', '.join(names)} typing\n")
        elif topic == TOPIC_STATUS:
            banner = session.banner()
            if banner:
                output.write(f"[{banner}]\n")

    session.on_change(_on_change)
    await asyncio.Event().wait()
    return 0


async def _run(args: argparse.Namespace, config: SyncConfig, output: TextIO) -> int:
    identity = UserIdentity(user_id=args.user_id, display_name=args.name or args.user_id)
    session = ChatSession(identity, args.credential, config)
    try:
        if not await _connect(session, config, output):
            return 1
        if args.command == "list":
            return await _run_list(session, output)
        if args.command == "send":
            return await _run_send(session, args.conversation_id, args.content, args.timeout, output)
        return await _run_tail(session, args.conversation_id, output)
    except ChatSyncError as exc:
        output.write(f"error: {exc}\n")
        return 1
    finally:
        await session.logout()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat-sync", description="Chat synchronization client")
    parser.add_argument("--base-url", help="gateway base URL (default from CHAT_SYNC_BASE_URL)")
    parser.add_argument("--user-id", default=os.getenv(ENV_USER_ID), help="local user id")
    parser.add_argument("--name", help="display name for the local user")
    parser.add_argument("--credential", default=os.getenv(ENV_CREDENTIAL), help="session credential")
    parser.add_argument("--log-level", help="log level (default from CHAT_SYNC_LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List conversations with unread counts")

    tail_parser = subparsers.add_parser("tail", help="Print a conversation and follow new messages")
    tail_parser.add_argument("conversation_id")

    send_parser = subparsers.add_parser("send", help="Send one message and wait for confirmation")
    send_parser.add_argument("conversation_id")
    send_parser.add_argument("content")
    send_parser.add_argument("--timeout", type=float, default=15.0, help="seconds to wait for confirmation")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for the ``chat-sync`` command."""

    config = load_config()
    args = build_parser().parse_args(argv)
    if not args.user_id or not args.credential:
        sys.stderr.write("--user-id and --credential are required\n")
        return 2
    if args.base_url:
        config.base_url = args.base_url.rstrip("/")
    configure_logging(args.log_level or config.log_level)
    stream = output or sys.stdout
    try:
        return asyncio.run(_run(args, config, stream))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
