from __future__ import annotations

from dataclasses import dataclass

from .config import NodeConfig
from .crypto.crypto_provider import CryptoProvider
from .store.base import Store
from .transport.base import Transport


@dataclass
class NodeContext:
    """Collaborators shared by every component of one node.

    ``peer_id`` is the transport identity, read once when the node starts.
    """

    config: NodeConfig
    crypto: CryptoProvider
    store: Store
    transport: Transport
    peer_id: str
