"""Streamline - normalized AI provider streaming with a replayable event journal"""

__version__ = "0.1.0"
