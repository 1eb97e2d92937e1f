"""Session relay and reconnection engine for streaming chat backends."""

from chatrelay.config import RelayConfig
from chatrelay.conversation import Conversation, EventStreamConversation, Turn
from chatrelay.service import RelayEngine

__all__ = [
    "Conversation",
    "EventStreamConversation",
    "RelayConfig",
    "RelayEngine",
    "Turn",
]
