from .base import Handler, PubSubMessage, Transport
from .memory import InMemoryBroker, InMemoryTransport

__all__ = ["Handler", "PubSubMessage", "Transport", "InMemoryBroker", "InMemoryTransport"]
