"""Concrete CryptoProvider using the 'cryptography' package.

Keys live on secp256k1. The symmetric key of a message is the SHA-256 of
the ECDH shared x-coordinate and messages are sealed with AES-CCM.
Signatures are ECDSA over SHA-256, transported as base64 of the fixed
width ``r || s`` pair so that every signature has the same length.
"""
import base64
import binascii

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.ciphers.aead import AESCCM

from .crypto_provider import CryptoProvider
from ..exceptions import InvalidKeyError, InvalidSignatureError

_COORD_BYTES = 32
_COORD_HEX = 2 * _COORD_BYTES
_NONCE_SIZE = 13
_TAG_LENGTH = 16


class DefaultCryptoProvider(CryptoProvider):
    """secp256k1 + AES-CCM provider.

    Parameters:
        curve: Elliptic curve instance (default SECP256K1). Must be a 256-bit curve.
    """

    def __init__(self, curve: ec.EllipticCurve | None = None):
        self._curve = curve or ec.SECP256K1()
        if self._curve.key_size != 8 * _COORD_BYTES:
            raise InvalidKeyError(f"Unsupported curve size: {self._curve.key_size}")

    @property
    def curve_name(self) -> str:
        return self._curve.name

    # --- Key encoding ---
    def _encode_public(self, pk: ec.EllipticCurvePublicKey) -> str:
        nums = pk.public_numbers()
        return f"{nums.x:0{_COORD_HEX}x}:{nums.y:0{_COORD_HEX}x}"

    def _decode_public(self, public: str) -> ec.EllipticCurvePublicKey:
        parts = public.split(":") if isinstance(public, str) else []
        if len(parts) != 2:
            raise InvalidKeyError("Public key must be two hex coordinates joined by ':'")
        try:
            x = bytes.fromhex(parts[0].rjust(_COORD_HEX, "0"))
            y = bytes.fromhex(parts[1].rjust(_COORD_HEX, "0"))
        except ValueError as e:
            raise InvalidKeyError("Public key coordinates must be hexadecimal") from e
        if len(x) != _COORD_BYTES or len(y) != _COORD_BYTES:
            raise InvalidKeyError("Public key coordinate out of range")
        try:
            return ec.EllipticCurvePublicKey.from_encoded_point(self._curve, b"\x04" + x + y)
        except ValueError as e:
            raise InvalidKeyError("Public key is not a point on the curve") from e

    def _decode_secret(self, secret: str) -> ec.EllipticCurvePrivateKey:
        try:
            value = int(secret, 16)
        except (TypeError, ValueError) as e:
            raise InvalidKeyError("Secret key must be a hexadecimal scalar") from e
        try:
            return ec.derive_private_key(value, self._curve)
        except ValueError as e:
            raise InvalidKeyError("Secret key out of range for curve") from e

    # --- Keys ---
    def generate_secret(self) -> str:
        sk = ec.generate_private_key(self._curve)
        return f"{sk.private_numbers().private_value:0{_COORD_HEX}x}"

    def public_from_secret(self, secret: str) -> str:
        return self._encode_public(self._decode_secret(secret).public_key())

    def derive_shared_key(self, secret: str, public: str) -> bytes:
        sk = self._decode_secret(secret)
        pk = self._decode_public(public)
        shared_x = sk.exchange(ec.ECDH(), pk)
        h = hashes.Hash(hashes.SHA256())
        h.update(shared_x)
        return h.finalize()

    # --- AEAD ---
    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        return AESCCM(key, tag_length=_TAG_LENGTH).encrypt(nonce, plaintext, None)

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        return AESCCM(key, tag_length=_TAG_LENGTH).decrypt(nonce, ciphertext, None)

    def aead_nonce_size(self) -> int:
        return _NONCE_SIZE

    # --- Signatures ---
    def sign(self, secret: str, text: str) -> str:
        sk = self._decode_secret(secret)
        der = sk.sign(text.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        raw = r.to_bytes(_COORD_BYTES, "big") + s.to_bytes(_COORD_BYTES, "big")
        return base64.b64encode(raw).decode("ascii")

    def verify(self, public: str, text: str, signature: str) -> None:
        pk = self._decode_public(public)
        try:
            raw = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise InvalidSignatureError("signature is not valid base64") from e
        if len(raw) != 2 * _COORD_BYTES:
            raise InvalidSignatureError("invalid signature length")
        r = int.from_bytes(raw[:_COORD_BYTES], "big")
        s = int.from_bytes(raw[_COORD_BYTES:], "big")
        try:
            pk.verify(encode_dss_signature(r, s), text.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
        except InvalidSignature as e:
            raise InvalidSignatureError("invalid signature") from e
