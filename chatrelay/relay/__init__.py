"""Cross-context message bus and the endpoint RPC surface."""

from chatrelay.relay.bus import MessageBus
from chatrelay.relay.client import RemoteSocketClient, RemoteStreamClient
from chatrelay.relay.endpoint import EndpointDispatcher

__all__ = ["EndpointDispatcher", "MessageBus", "RemoteSocketClient", "RemoteStreamClient"]
