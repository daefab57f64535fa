"""Client-side chat synchronization engine."""

from .config import SyncConfig, load_config
from .connection import ConnectionManager, ConnectionState, ConnectionStatus
from .conversation_list import ConversationList
from .conversations import Conversation, ConversationFilters, ConversationStore, GroupSettings
from .errors import ChatSyncError
from .models import Message, MessageStatus, UserIdentity
from .presence import PresenceTracker
from .reconciler import MergeOutcome, MessageReconciler
from .session import ChatSession

__all__ = [
    "ChatSession",
    "ChatSyncError",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "Conversation",
    "ConversationFilters",
    "ConversationList",
    "ConversationStore",
    "GroupSettings",
    "Message",
    "MessageReconciler",
    "MessageStatus",
    "MergeOutcome",
    "PresenceTracker",
    "SyncConfig",
    "UserIdentity",
    "load_config",
]
