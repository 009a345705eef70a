"""Periodic driver for the message and certificate rounds of every enabled account."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..context import NodeContext
from ..models import Account, OutMessage
from ..protocol.certificates import CertificateProtocol
from ..protocol.messages import MessageProtocol

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs the dequeue round and the certificate round on fixed intervals.

    Each account gets its own freshly drawn path in every message round.
    A failing account is logged and retried on the next tick; it never
    stops the other accounts or the loops.
    """

    def __init__(self, ctx: NodeContext, messages: MessageProtocol, certificates: CertificateProtocol):
        self._ctx = ctx
        self._messages = messages
        self._certificates = certificates
        self._tasks: List[asyncio.Task[None]] = []
        self._ticks: Set[asyncio.Future[object]] = set()
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def _enabled_accounts(self) -> List[Account]:
        return await self._ctx.store.find_accounts(self._ctx.peer_id, enabled=True)

    async def run_message_cycle(self) -> Dict[str, Optional[OutMessage]]:
        """One dequeue round per enabled account.

        Returns:
            Account name to the message sent in this round (``None`` for cover
            traffic). Accounts that failed are left out.
        """
        sent: Dict[str, Optional[OutMessage]] = {}
        async with self._tick_lock:
            for account in await self._enabled_accounts():
                try:
                    sent[account.account_name] = await self._messages.dequeue_and_publish(account)
                except Exception:
                    logger.exception("Message round failed for account: %s", account.account_name)
        return sent

    async def run_certificate_cycle(self) -> Dict[str, bool]:
        """Renew and announce the certificate of every enabled account."""
        published: Dict[str, bool] = {}
        async with self._tick_lock:
            for account in await self._enabled_accounts():
                try:
                    published[account.account_name] = await self._certificates.publish_certificate(account)
                except Exception:
                    logger.exception("Certificate round failed for account: %s", account.account_name)
        return published

    async def _loop(self, interval: float, tick: Callable[[], Awaitable[object]]) -> None:
        while True:
            await asyncio.sleep(interval)
            # stop() waits for rounds instead of interrupting them mid-publish
            round_task = asyncio.ensure_future(tick())
            self._ticks.add(round_task)
            round_task.add_done_callback(self._ticks.discard)
            await asyncio.shield(round_task)

    async def start(self) -> None:
        if self.running:
            return
        cfg = self._ctx.config
        await self.run_certificate_cycle()
        self._tasks = [
            asyncio.create_task(self._loop(cfg.message_interval_seconds, self.run_message_cycle)),
            asyncio.create_task(self._loop(cfg.certificate_interval_seconds, self.run_certificate_cycle)),
        ]
        logger.debug(
            "Scheduler started: messages every %ss, certificates every %ss",
            cfg.message_interval_seconds,
            cfg.certificate_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop rescheduling rounds; a round already running is allowed to finish."""
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Rounds that outlived their loop, including ones not yet holding the lock
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)
