"""Reference-counted topic subscriptions shared by all local accounts."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Tuple

from ..exceptions import TransportError
from ..protocol.topics import certificate_topic, message_topic
from ..transport.base import Handler, Transport

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Maps ``(group name, subgroup index)`` subscriptions onto transport topics.

    Every logical subscription takes one reference on the message topic and
    one on the group's certificate topic. The transport only sees the
    transitions 0 -> 1 (subscribe) and 1 -> 0 (unsubscribe), so a topic is
    subscribed exactly once however many accounts need it.

    Parameters:
        transport: Underlying pub/sub transport.
        message_handler: Handler registered on message topics.
        certificate_handler: Handler registered on certificate topics.
        retries: Attempts per transport call before the error propagates.
    """

    def __init__(
        self,
        transport: Transport,
        message_handler: Handler,
        certificate_handler: Handler,
        retries: int = 3,
    ):
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self._transport = transport
        self._message_handler = message_handler
        self._certificate_handler = certificate_handler
        self._retries = retries
        self._counts: Dict[str, int] = {}
        self._handlers: Dict[str, Handler] = {}
        self._lock = asyncio.Lock()

    def refcount(self, topic: str) -> int:
        return self._counts.get(topic, 0)

    def topics(self) -> List[str]:
        return sorted(self._counts)

    async def _with_retries(self, action: Callable[[], Awaitable[None]], what: str) -> None:
        for attempt in range(1, self._retries + 1):
            try:
                await action()
                return
            except TransportError as e:
                logger.debug("Attempt %d/%d to %s failed: %s", attempt, self._retries, what, e)
                if attempt == self._retries:
                    raise

    async def _acquire(self, topic: str, handler: Handler) -> Tuple[int, int]:
        before = self._counts.get(topic, 0)
        if before == 0:
            await self._with_retries(
                lambda: self._transport.subscribe(topic, handler), f"subscribe to {topic}"
            )
            logger.debug("Now subscribed to: %s", topic)
        self._handlers[topic] = handler
        self._counts[topic] = before + 1
        return before, before + 1

    async def _release(self, topic: str, handler: Handler) -> Tuple[int, int]:
        before = self._counts.get(topic, 0)
        if before == 0:
            return 0, 0
        if before == 1:
            await self._with_retries(
                lambda: self._transport.unsubscribe(topic, handler), f"unsubscribe from {topic}"
            )
            del self._counts[topic]
            del self._handlers[topic]
            logger.debug("Unsubscribed from: %s", topic)
            return 1, 0
        self._counts[topic] = before - 1
        return before, before - 1

    async def subscribe(self, name: str, subgroup_index: int) -> None:
        """Take a reference on the message topic and the certificate topic of a group node.

        Raises:
            TransportError: If the transport keeps failing; no reference is left behind.
        """
        topic = message_topic(name, subgroup_index)
        certs = certificate_topic(name)
        async with self._lock:
            await self._acquire(topic, self._message_handler)
            try:
                await self._acquire(certs, self._certificate_handler)
            except TransportError:
                await self._release(topic, self._message_handler)
                raise

    async def unsubscribe(self, name: str, subgroup_index: int) -> None:
        """Release one reference on both topics; unknown topics are ignored.

        Raises:
            TransportError: If the transport keeps failing; both references are then still held.
        """
        topic = message_topic(name, subgroup_index)
        certs = certificate_topic(name)
        async with self._lock:
            released, _ = await self._release(topic, self._message_handler)
            try:
                await self._release(certs, self._certificate_handler)
            except TransportError:
                if released:
                    await self._acquire(topic, self._message_handler)
                raise

    async def close(self) -> None:
        """Drop every transport subscription regardless of reference counts."""
        async with self._lock:
            for topic in list(self._counts):
                try:
                    await self._transport.unsubscribe(topic, self._handlers[topic])
                except TransportError:
                    logger.exception("Failed to unsubscribe from: %s", topic)
                del self._counts[topic]
                del self._handlers[topic]
