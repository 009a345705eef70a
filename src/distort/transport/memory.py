"""Loopback pub/sub transport connecting several nodes inside one event loop."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Set, Tuple

from .base import Handler, PubSubMessage, Transport
from ..exceptions import TransportError

logger = logging.getLogger(__name__)


class InMemoryBroker:
    """Routes published payloads to every subscriber of a topic, publisher included.

    Each delivery runs as its own task, so inbound handlers can interleave
    with whatever the publisher does next. Handler failures are logged and
    kept in ``errors``.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Tuple[str, Handler]]] = defaultdict(list)
        self._tasks: Set[asyncio.Task[None]] = set()
        self.errors: List[BaseException] = []
        self.published: List[PubSubMessage] = []

    def transport(self, peer_id: str) -> "InMemoryTransport":
        return InMemoryTransport(self, peer_id)

    def subscribers(self, topic: str) -> List[str]:
        return [peer for peer, _ in self._subscribers.get(topic, [])]

    def _add(self, topic: str, peer_id: str, handler: Handler) -> None:
        self._subscribers[topic].append((peer_id, handler))

    def _remove(self, topic: str, peer_id: str, handler: Handler) -> None:
        entries = self._subscribers.get(topic, [])
        for i, (peer, h) in enumerate(entries):
            if peer == peer_id and h == handler:
                del entries[i]
                break
        else:
            raise TransportError(f"{peer_id} is not subscribed to: {topic}")
        if not entries:
            self._subscribers.pop(topic, None)

    def _deliver(self, message: PubSubMessage) -> None:
        self.published.append(message)
        for _, handler in list(self._subscribers.get(message.topic, [])):
            task = asyncio.create_task(self._run(handler, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, handler: Handler, message: PubSubMessage) -> None:
        try:
            await handler(message)
        except Exception as e:
            logger.exception("Handler failed for message on topic: %s", message.topic)
            self.errors.append(e)

    async def drain(self) -> None:
        """Wait until every pending delivery (and any it triggered) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class InMemoryTransport(Transport):
    def __init__(self, broker: InMemoryBroker, peer_id: str):
        self._broker = broker
        self._peer_id = peer_id

    async def peer_id(self) -> str:
        return self._peer_id

    async def subscribe(self, topic: str, handler: Handler) -> None:
        self._broker._add(topic, self._peer_id, handler)
        logger.debug("%s subscribed to: %s", self._peer_id, topic)

    async def unsubscribe(self, topic: str, handler: Handler) -> None:
        self._broker._remove(topic, self._peer_id, handler)
        logger.debug("%s unsubscribed from: %s", self._peer_id, topic)

    async def publish(self, topic: str, data: bytes) -> None:
        self._broker._deliver(PubSubMessage(data=bytes(data), from_peer=self._peer_id, topic=topic))
