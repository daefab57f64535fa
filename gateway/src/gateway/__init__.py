"""Reference store and transport gateway for the chat synchronization engine."""

from .hub import RoomHub, Subscription
from .presence import OnlineRegistry
from .server import main, simulate
from .store import MessageLog
from .ws_transport import create_app

__all__ = [
    "MessageLog",
    "OnlineRegistry",
    "RoomHub",
    "Subscription",
    "create_app",
    "main",
    "simulate",
]
