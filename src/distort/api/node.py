from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .accounts import AccountService
from .scheduler import Scheduler
from .subscriptions import SubscriptionManager
from ..config import NodeConfig
from ..context import NodeContext
from ..crypto.crypto_provider import CryptoProvider
from ..crypto.default_crypto_provider import DefaultCryptoProvider
from ..exceptions import DistortError, InvalidKeyError
from ..models import ROOT_ACCOUNT
from ..protocol.certificates import CertificateProtocol
from ..protocol.messages import MessageProtocol
from ..store.base import Store
from ..transport.base import PubSubMessage, Transport

logger = logging.getLogger(__name__)


@dataclass
class _Runtime:
    """Components that exist between ``start()`` and ``shutdown()``."""

    ctx: NodeContext
    messages: MessageProtocol
    certificates: CertificateProtocol
    subscriptions: SubscriptionManager
    accounts: AccountService
    scheduler: Scheduler


class DistortNode:
    """One distort node: the explicit context every component shares.

    ``start()`` reads the transport identity, bootstraps the root account on
    first run, subscribes the stored groups of every enabled account and
    starts the scheduler. ``shutdown()`` undoes this.

    Parameters:
        transport: Pub/sub transport.
        store: Persistence layer.
        config: Node settings, ``NodeConfig.recommended()`` by default.
        crypto: Crypto provider, ``DefaultCryptoProvider()`` by default.
        run_scheduler: Start the periodic rounds on ``start()``.
    """

    def __init__(
        self,
        transport: Transport,
        store: Store,
        config: Optional[NodeConfig] = None,
        crypto: Optional[CryptoProvider] = None,
        run_scheduler: bool = True,
    ):
        self._transport = transport
        self._store = store
        self._config = config or NodeConfig.recommended()
        self._crypto = crypto or DefaultCryptoProvider()
        self._run_scheduler = run_scheduler
        self._runtime: Optional[_Runtime] = None

    # --- Lifecycle ---
    @property
    def started(self) -> bool:
        return self._runtime is not None

    def _require(self) -> _Runtime:
        if self._runtime is None:
            raise DistortError("Node is not started")
        return self._runtime

    @property
    def context(self) -> NodeContext:
        return self._require().ctx

    @property
    def peer_id(self) -> str:
        return self._require().ctx.peer_id

    @property
    def accounts(self) -> AccountService:
        return self._require().accounts

    @property
    def scheduler(self) -> Scheduler:
        return self._require().scheduler

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._require().subscriptions

    @property
    def messages(self) -> MessageProtocol:
        return self._require().messages

    @property
    def certificates(self) -> CertificateProtocol:
        return self._require().certificates

    async def _on_message(self, message: PubSubMessage) -> None:
        runtime = self._runtime
        if runtime is None:
            logger.debug("Node stopped, dropping message on: %s", message.topic)
            return
        await runtime.messages.handle_message(message)

    async def _on_certificate(self, message: PubSubMessage) -> None:
        runtime = self._runtime
        if runtime is None:
            logger.debug("Node stopped, dropping certificate on: %s", message.topic)
            return
        await runtime.certificates.handle_certificate(message)

    async def start(self) -> "DistortNode":
        if self._runtime is not None:
            return self
        peer_id = await self._transport.peer_id()
        ctx = NodeContext(
            config=self._config,
            crypto=self._crypto,
            store=self._store,
            transport=self._transport,
            peer_id=peer_id,
        )
        messages = MessageProtocol(ctx)
        certificates = CertificateProtocol(ctx)
        subscriptions = SubscriptionManager(
            self._transport, self._on_message, self._on_certificate, self._config.transport_retries
        )
        runtime = _Runtime(
            ctx=ctx,
            messages=messages,
            certificates=certificates,
            subscriptions=subscriptions,
            accounts=AccountService(ctx, subscriptions, certificates),
            scheduler=Scheduler(ctx, messages, certificates),
        )
        self._runtime = runtime

        enabled = await self._store.find_accounts(peer_id, enabled=True)
        if not enabled:
            logger.info("Creating new account for peer-ID: %s", peer_id)
            await runtime.accounts.create_account(ROOT_ACCOUNT)
        for account in enabled:
            for group in await self._store.find_groups(peer_id, account.account_name):
                await subscriptions.subscribe(group.name, group.subgroup_index)

        if self._run_scheduler:
            await runtime.scheduler.start()
        return self

    async def shutdown(self) -> None:
        runtime = self._runtime
        if runtime is None:
            return
        await runtime.scheduler.stop()
        await runtime.subscriptions.close()
        self._runtime = None

    async def __aenter__(self) -> "DistortNode":
        return await self.start()

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    # --- Identity helpers ---
    async def sign_text(self, text: str, account_name: str = ROOT_ACCOUNT) -> str:
        """Sign arbitrary text with an account's signing key, e.g. to link an outside identity."""
        cert = await self.accounts.get_certificate(account_name)
        if cert.sign.sec is None:
            raise InvalidKeyError(f"No signing key for account: {account_name}")
        return await asyncio.to_thread(self._crypto.sign, cert.sign.sec, text)

    async def verify_text(self, public: str, text: str, signature: str) -> bool:
        return await asyncio.to_thread(self._crypto.verify_text, public, text, signature)
