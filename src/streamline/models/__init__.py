"""Data models for Streamline"""
from .events import EventType, NormalizedEvent
from .session import StreamPhase, StreamSession, TerminalStatus

__all__ = [
    "EventType",
    "NormalizedEvent",
    "StreamPhase",
    "StreamSession",
    "TerminalStatus",
]
