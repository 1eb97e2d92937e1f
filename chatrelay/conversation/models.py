"""Conversation data structures."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime


def new_conversation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Session:
    """Authenticated, continuable conversational context."""

    access_token: str
    conversation_id: str = field(default_factory=new_conversation_id)
    # Continuation reference for the next turn (last assistant message id).
    parent_message_id: str | None = None
    is_start_of_session: bool = True
    acquired_at: float = field(default_factory=time.time)


@dataclass
class Turn:
    """Accumulates state for one prompt/response exchange."""

    prompt: str
    start_time: datetime = field(default_factory=datetime.now)
    text: str = ""
    suggestions: list[str] = field(default_factory=list)
    status: str = "pending"  # pending|streaming|auth_required|done|fatal
    error: BaseException | None = None
    frames: int = 0
    reconnects: int = 0

    @property
    def finished(self) -> bool:
        return self.status in {"done", "fatal"}

    @property
    def duration_s(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()

    def summary(self) -> dict:
        return {
            "status": self.status,
            "text": self.text,
            "suggestions": list(self.suggestions),
            "frames": self.frames,
            "reconnects": self.reconnects,
            "duration_s": float(self.duration_s),
            "error": str(self.error) if self.error else None,
        }
