"""Signalroom conversation engine interfaces and helpers."""

from .backend import Backend
from .channel import MessageChannel
from .config import EngineConfig, load_engine_config_from_env
from .engine import ConversationEngine
from .hub import Subscription, SubscriptionHub
from .inbox import ConversationUnifier
from .invitations import InvitationLifecycle
from .mutes import MuteStore
from .server import main, simulate
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteRowStore
from .store import InMemoryRowStore
from .typing_presence import TypingPresence
from .unread import UnreadAggregator

__all__ = [
    "Backend",
    "ConversationEngine",
    "ConversationUnifier",
    "EngineConfig",
    "InMemoryRowStore",
    "InvitationLifecycle",
    "MessageChannel",
    "MuteStore",
    "SQLiteBackend",
    "SQLiteRowStore",
    "Subscription",
    "SubscriptionHub",
    "TypingPresence",
    "UnreadAggregator",
    "load_engine_config_from_env",
    "main",
    "simulate",
]
