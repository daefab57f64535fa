"""Reference gateway CLI: serve the aiohttp app or replay frames offline."""

from __future__ import annotations

import argparse
import functools
import itertools
import json
import sys
from typing import Any, Callable, Dict, Iterable, TextIO

from aiohttp import web

from chat_sync.constants import EVENT_JOIN_CHAT, EVENT_MARK_MESSAGE_READ, EVENT_MESSAGE_READ, EVENT_NEW_MESSAGE, EVENT_SEND_MESSAGE
from chat_sync.conversations import ConversationStore
from chat_sync.logging_config import configure_logging

from .config import load_config, parse_tokens
from .hub import RoomHub
from .store import MessageLog
from .ws_transport import create_app

EVENT_CREATE_GROUP = "create_group"
EVENT_CREATE_DIRECT = "create_direct"


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through the store and room hub and emit deliveries.

    Each frame names the acting ``user_id``. Conversations get ids ``c1``,
    ``c2``, ... and messages ``m1``, ``m2``, ... in creation order so scripts
    can refer to them. Timestamps come from a counter that ticks once per
    read, so the same script always yields the same output.
    """

    conversation_ids = itertools.count(1)
    message_ids = itertools.count(1)
    clock = functools.partial(next, itertools.count(1))
    conversations = ConversationStore(now_func=clock, id_factory=lambda: f"c{next(conversation_ids)}")
    messages = MessageLog(now_func=clock, id_factory=lambda: f"m{next(message_ids)}")
    hub = RoomHub()
    callbacks: Dict[str, Callable[[Dict[str, Any]], None]] = {}

    def callback_for(user_id: str) -> Callable[[Dict[str, Any]], None]:
        if user_id not in callbacks:
            def _callback(frame: Dict[str, Any], user: str = user_id) -> None:
                output.write(json.dumps({"to": user, "t": frame["t"], "body": frame["body"]}) + "\n")

            callbacks[user_id] = _callback
        return callbacks[user_id]

    for frame in frames:
        frame_type = frame.get("t")
        user_id = frame["user_id"]
        body = frame.get("body") or {}
        if frame_type == EVENT_CREATE_GROUP:
            conversations.create_group(user_id, body.get("participants", []), name=body.get("name", ""))
        elif frame_type == EVENT_CREATE_DIRECT:
            conversations.find_or_create_direct(user_id, body["participant_id"])
        elif frame_type == EVENT_JOIN_CHAT:
            conversation = conversations.get(body["conversation_id"])
            if conversation.is_member(user_id):
                hub.join(user_id, conversation.conversation_id, callback_for(user_id))
        elif frame_type == EVENT_SEND_MESSAGE:
            conversation_id = body["conversation_id"]
            message, created = messages.append(conversation_id, user_id, body["content"], body.get("nonce"))
            if created:
                conversations.touch(conversation_id, message.message_id, message.ts_ms)
                hub.broadcast(
                    conversation_id,
                    {"t": EVENT_NEW_MESSAGE, "body": {"conversation_id": conversation_id, "message": message.to_dict()}},
                )
        elif frame_type == EVENT_MARK_MESSAGE_READ:
            conversation_id = body["conversation_id"]
            message, changed = messages.mark_read(conversation_id, body["message_id"], user_id)
            if message is not None and changed:
                read_at = next(r.read_at_ms for r in message.read_by if r.user_id == user_id)
                hub.broadcast(
                    conversation_id,
                    {
                        "t": EVENT_MESSAGE_READ,
                        "body": {
                            "message_id": message.message_id,
                            "user_id": user_id,
                            "conversation_id": conversation_id,
                            "read_at": read_at,
                        },
                    },
                )
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config()
    configure_logging(args.log_level or config.log_level)
    tokens = dict(config.tokens)
    if args.tokens:
        tokens.update(parse_tokens(args.tokens))
    app = create_app(
        tokens=tokens,
        ping_interval_s=args.ping_interval or config.ping_interval_s,
        ping_miss_limit=config.ping_miss_limit,
        max_msg_size=config.max_msg_size,
    )
    web.run_app(app, host=args.host or config.host, port=args.port or config.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for the ``chat-gateway`` command."""

    parser = argparse.ArgumentParser(prog="chat-gateway", description="Reference chat gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay frames through the store offline")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=float, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--tokens", default=None, help="token=user_id[:Name] pairs, comma separated")
    serve_parser.add_argument("--log-level", default=None, help="Log level")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
