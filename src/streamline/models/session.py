"""Stream session model"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class StreamPhase(str, Enum):
    """Coarse timeout-budget classification of a running turn"""
    INITIAL = "initial"
    STREAMING = "streaming"
    TOOL_EXECUTION = "tool_execution"
    PENDING_RESPONSE = "pending_response"


class TerminalStatus(str, Enum):
    """Stream status as stored in the journal"""
    RUNNING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"
    TIMEOUT = "timeout"


@dataclass
class StreamSession:
    """One streaming turn for one conversation"""
    conversation_id: str
    provider_type: str
    phase: StreamPhase = StreamPhase.INITIAL
    started_at: datetime = field(default_factory=datetime.utcnow)
    last_output_at: datetime = field(default_factory=datetime.utcnow)
    provider_session_id: Optional[str] = None
    terminal_status: TerminalStatus = TerminalStatus.RUNNING

    @property
    def is_finished(self) -> bool:
        return self.terminal_status is not TerminalStatus.RUNNING

    def touch(self) -> None:
        """Record output activity"""
        self._ensure_mutable()
        self.last_output_at = datetime.utcnow()

    def enter_phase(self, phase: StreamPhase) -> None:
        self._ensure_mutable()
        self.phase = phase

    def finish(self, status: TerminalStatus) -> None:
        """Set the terminal status. A finished session cannot change again."""
        self._ensure_mutable()
        if status is TerminalStatus.RUNNING:
            raise ValueError("Terminal status must not be 'streaming'")
        self.terminal_status = status

    def _ensure_mutable(self) -> None:
        if self.is_finished:
            raise RuntimeError(
                f"Stream session for {self.conversation_id} already finished "
                f"with status {self.terminal_status.value}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "provider_type": self.provider_type,
            "phase": self.phase.value,
            "started_at": self.started_at.isoformat(),
            "last_output_at": self.last_output_at.isoformat(),
            "provider_session_id": self.provider_session_id,
            "terminal_status": self.terminal_status.value,
        }
