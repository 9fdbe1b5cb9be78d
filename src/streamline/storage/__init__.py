"""Storage layer: Redis connection, event journal, session continuity"""
from .conversation import ConversationRecorder, InMemoryConversationRecorder
from .journal import EventJournal, JournalEntry
from .redis_store import close_redis, get_redis, init_redis
from .session_store import ProviderSession, SessionStore

__all__ = [
    "ConversationRecorder",
    "EventJournal",
    "InMemoryConversationRecorder",
    "JournalEntry",
    "ProviderSession",
    "SessionStore",
    "close_redis",
    "get_redis",
    "init_redis",
]
