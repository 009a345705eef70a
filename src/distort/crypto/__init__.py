from .crypto_provider import CryptoProvider
from .default_crypto_provider import DefaultCryptoProvider

__all__ = ["CryptoProvider", "DefaultCryptoProvider"]
