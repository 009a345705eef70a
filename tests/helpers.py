from __future__ import annotations

from datetime import timedelta
from typing import Iterable, List, Optional, Set, Tuple

from distort import DefaultCryptoProvider, DistortNode, InMemoryBroker, InMemoryStore, NodeConfig
from distort.context import NodeContext
from distort.crypto.crypto_provider import CryptoProvider
from distort.exceptions import TransportError
from distort.models import ROOT_ACCOUNT, Account, Certificate, utcnow
from distort.transport.base import Handler, Transport
from distort.transport.memory import InMemoryTransport


def make_certificate(
    crypto: CryptoProvider,
    peer_id: str,
    account_name: str = ROOT_ACCOUNT,
    owned: bool = True,
    groups: Iterable[str] = (),
    lifetime: timedelta = timedelta(days=14),
) -> Certificate:
    encrypt = crypto.generate_key_pair()
    sign = crypto.generate_key_pair()
    if not owned:
        encrypt, sign = encrypt.public_only(), sign.public_only()
    return Certificate(
        peer_id=peer_id,
        account_name=account_name,
        encrypt=encrypt,
        sign=sign,
        last_expiration=utcnow() + lifetime,
        groups=list(groups),
    )


def make_context(
    peer_id: str = "peer-a",
    broker: Optional[InMemoryBroker] = None,
    config: Optional[NodeConfig] = None,
) -> Tuple[NodeContext, InMemoryBroker]:
    broker = broker or InMemoryBroker()
    ctx = NodeContext(
        config=config or NodeConfig(),
        crypto=DefaultCryptoProvider(),
        store=InMemoryStore(),
        transport=broker.transport(peer_id),
        peer_id=peer_id,
    )
    return ctx, broker


async def add_owned_account(
    ctx: NodeContext, account_name: str = ROOT_ACCOUNT, groups: Iterable[str] = ()
) -> Tuple[Account, Certificate]:
    cert = await ctx.store.insert_certificate(
        make_certificate(ctx.crypto, ctx.peer_id, account_name, groups=groups)
    )
    account = await ctx.store.insert_account(
        Account(peer_id=ctx.peer_id, account_name=account_name, cert_id=cert.id)
    )
    return account, cert


async def start_node(broker: InMemoryBroker, peer_id: str, config: Optional[NodeConfig] = None) -> DistortNode:
    node = DistortNode(broker.transport(peer_id), InMemoryStore(), config or NodeConfig(), run_scheduler=False)
    return await node.start()


def _fail_once(failures: dict, topic: str, what: str) -> None:
    remaining = failures.get(topic, 0)
    if remaining:
        failures[topic] = remaining - 1
        raise TransportError(f"Failed to {what}: {topic}")


class RecordingTransport(Transport):
    """Transport double that records calls and fails on demand."""

    def __init__(self, peer_id: str = "peer-a"):
        self._peer_id = peer_id
        self.subscribed: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        self.published: List[Tuple[str, bytes]] = []
        # topic -> number of upcoming calls that fail
        self.fail_subscribe: dict[str, int] = {}
        self.fail_unsubscribe: dict[str, int] = {}

    async def peer_id(self) -> str:
        return self._peer_id

    async def subscribe(self, topic: str, handler: Handler) -> None:
        self.calls.append(("subscribe", topic))
        _fail_once(self.fail_subscribe, topic, "subscribe to")
        if topic in self.subscribed:
            raise TransportError(f"Already subscribed to: {topic}")
        self.subscribed.add(topic)

    async def unsubscribe(self, topic: str, handler: Handler) -> None:
        self.calls.append(("unsubscribe", topic))
        _fail_once(self.fail_unsubscribe, topic, "unsubscribe from")
        if topic not in self.subscribed:
            raise TransportError(f"Not subscribed to: {topic}")
        self.subscribed.discard(topic)

    async def publish(self, topic: str, data: bytes) -> None:
        self.published.append((topic, data))


def public_copy(cert: Certificate) -> Certificate:
    """The certificate as a remote node learns it: same keys, no secrets, new id."""
    return Certificate(
        peer_id=cert.peer_id,
        account_name=cert.account_name,
        encrypt=cert.encrypt.public_only(),
        sign=cert.sign.public_only(),
        last_expiration=cert.last_expiration,
        groups=list(cert.groups),
    )


class FlakyTransport(InMemoryTransport):
    """Broker transport whose unsubscribe calls fail on demand."""

    def __init__(self, broker: InMemoryBroker, peer_id: str):
        super().__init__(broker, peer_id)
        self.fail_unsubscribe: dict[str, int] = {}

    async def unsubscribe(self, topic: str, handler: Handler) -> None:
        _fail_once(self.fail_unsubscribe, topic, "unsubscribe from")
        await super().unsubscribe(topic, handler)
