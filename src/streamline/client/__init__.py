"""Client for following journal streams"""

from .consumer import EventDeduplicator, StreamConsumer, ToolProgressTracker

__all__ = ["EventDeduplicator", "StreamConsumer", "ToolProgressTracker"]
