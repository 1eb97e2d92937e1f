"""Conversation drivers.

- engine: the chat-socket driver (auth, reconnects, frame dispatch)
- eventstream: the HTTP event-stream driver
- state: the transition table both drivers follow
"""

from chatrelay.conversation.engine import Conversation
from chatrelay.conversation.eventstream import EventStreamConversation
from chatrelay.conversation.models import Session, Turn
from chatrelay.conversation.state import ConversationState

__all__ = [
    "Conversation",
    "ConversationState",
    "EventStreamConversation",
    "Session",
    "Turn",
]
