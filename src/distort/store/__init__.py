from .base import UNSET, CertificateStore, Store
from .memory import InMemoryStore

__all__ = ["UNSET", "CertificateStore", "Store", "InMemoryStore"]
