"""Socket and event-stream transports."""

from chatrelay.transport.registry import ReceiveResult, SocketState, TransportRegistry
from chatrelay.transport.streams import EventStreamRegistry

__all__ = ["EventStreamRegistry", "ReceiveResult", "SocketState", "TransportRegistry"]
