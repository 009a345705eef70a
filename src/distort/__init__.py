"""distort: an anonymity-preserving messaging engine over topic-based pub/sub."""

from .api.node import DistortNode
from .config import NodeConfig
from .crypto.default_crypto_provider import DefaultCryptoProvider
from .exceptions import DistortError
from .store.memory import InMemoryStore
from .transport.memory import InMemoryBroker, InMemoryTransport

__version__ = "0.1.0"

__all__ = [
    "DistortNode",
    "NodeConfig",
    "DefaultCryptoProvider",
    "DistortError",
    "InMemoryStore",
    "InMemoryBroker",
    "InMemoryTransport",
]
