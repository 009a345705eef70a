from abc import ABC, abstractmethod

from ..exceptions import DistortError
from ..models import KeyPair


class CryptoProvider(ABC):
    """Key-pair abstraction used by the codec and the protocols.

    Keys travel as strings: public keys as two hex coordinates joined by
    ``':'``, secret keys as a hex scalar.
    """

    @property
    @abstractmethod
    def curve_name(self) -> str:
        pass

    @abstractmethod
    def generate_secret(self) -> str:
        """Fresh random secret scalar as hex."""
        pass

    def generate_key_pair(self) -> KeyPair:
        secret = self.generate_secret()
        return KeyPair(pub=self.public_from_secret(secret), sec=secret)

    @abstractmethod
    def public_from_secret(self, secret: str) -> str:
        pass

    @abstractmethod
    def derive_shared_key(self, secret: str, public: str) -> bytes:
        """
        Diffie-Hellman between our secret and their public key, hashed to a symmetric key.
        """
        pass

    @abstractmethod
    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        pass

    @abstractmethod
    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        pass

    @abstractmethod
    def aead_nonce_size(self) -> int:
        pass

    @abstractmethod
    def sign(self, secret: str, text: str) -> str:
        pass

    @abstractmethod
    def verify(self, public: str, text: str, signature: str) -> None:
        """
        Raise InvalidSignatureError unless ``signature`` is valid for ``text``.
        """
        pass

    def verify_text(self, public: str, text: str, signature: str) -> bool:
        try:
            self.verify(public, text, signature)
        except DistortError:
            return False
        return True
