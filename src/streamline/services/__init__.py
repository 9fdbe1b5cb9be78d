"""Core services for Streamline"""

from .stream_service import ContentTracker, StreamService, TurnOutcome

__all__ = ["ContentTracker", "StreamService", "TurnOutcome"]
