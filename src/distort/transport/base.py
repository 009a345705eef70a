from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable


@dataclass(frozen=True)
class PubSubMessage:
    """A payload delivered on ``topic``, published by transport identity ``from_peer``."""

    data: bytes
    from_peer: str
    topic: str


Handler = Callable[[PubSubMessage], Awaitable[None]]


class Transport(ABC):
    """Topic-based publish/subscribe transport.

    Implementations raise TransportError when an operation fails.
    """

    @abstractmethod
    async def peer_id(self) -> str:
        """Transport identity of this node."""

    @abstractmethod
    async def subscribe(self, topic: str, handler: Handler) -> None:
        pass

    @abstractmethod
    async def unsubscribe(self, topic: str, handler: Handler) -> None:
        pass

    @abstractmethod
    async def publish(self, topic: str, data: bytes) -> None:
        pass
