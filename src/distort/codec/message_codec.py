"""Packing and unpacking of fixed-length message envelopes.

Every envelope, real or cover, is produced the same way: a fresh ephemeral
key pair is published in the clear, a symmetric key is agreed against some
public key, and exactly ``MESSAGE_LENGTH`` characters are sealed under it.
For real traffic the agreed key belongs to the recipient and the
characters are the JSON wrapper ``{"m": <text>, "p": <padding>}``; for
cover traffic the key belongs to a throwaway pair and the characters are
random hex. Without the recipient's secret key the two are
indistinguishable.
"""
from __future__ import annotations

import binascii
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from cryptography.exceptions import InvalidTag

from ..crypto.crypto_provider import CryptoProvider
from ..crypto.utils import b64_decode, b64_encode, random_hex
from ..exceptions import InvalidKeyError, MessageLengthError, MessageTooLongError
from ..models import Certificate, utcnow
from ..protocol.envelopes import MessageEnvelope

logger = logging.getLogger(__name__)

# Constant of the protocol, shared by every peer
MESSAGE_LENGTH = 1024

_PAD_BLOCK = 8
_PAD_FILL = "a"


@dataclass(frozen=True)
class UnpackedMessage:
    certificate: Certificate
    message: str


def _wrap(text: str, padding: str) -> str:
    return json.dumps({"m": text, "p": padding}, separators=(",", ":"), ensure_ascii=False)


def padding_room(text: str) -> int:
    """Number of padding characters ``text`` leaves in a message; negative if it does not fit."""
    return MESSAGE_LENGTH - len(_wrap(text, ""))


def normalize_message(text: str) -> str:
    """Wrap ``text`` with random padding into exactly ``MESSAGE_LENGTH`` characters.

    Padding is drawn in blocks of random hex characters; the final partial
    block is filled with a fixed character.

    Raises:
        MessageTooLongError: If ``text`` does not fit into one message.
        MessageLengthError: If the wrapped result is not exactly ``MESSAGE_LENGTH`` long.
    """
    room = padding_room(text)
    if room < 0:
        raise MessageTooLongError(
            f"Message needs {-room} more characters than a single message holds"
        )
    padding = random_hex(room - room % _PAD_BLOCK)
    padding += _PAD_FILL * (room - len(padding))
    normalized = _wrap(text, padding)
    if len(normalized) != MESSAGE_LENGTH:
        raise MessageLengthError(f"Invalid message length: {len(normalized)}")
    return normalized


def cover_message() -> str:
    return random_hex(MESSAGE_LENGTH)


def pack(
    crypto: CryptoProvider,
    version: str,
    from_account: str,
    message: Optional[str] = None,
    recipient: Optional[Certificate] = None,
) -> MessageEnvelope:
    """Seal ``message`` for ``recipient``, or produce cover traffic when there is no recipient.

    The returned envelope only carries public fields; it is not signed.

    Raises:
        MessageTooLongError: If ``message`` does not fit.
        MessageLengthError: If the sealed plaintext is not exactly ``MESSAGE_LENGTH`` long.
    """
    ephemeral_secret = crypto.generate_secret()

    if recipient is not None:
        if message is None:
            raise ValueError("A message is required when packing for a recipient")
        plaintext = normalize_message(message)
        shared = crypto.derive_shared_key(ephemeral_secret, recipient.encrypt.pub)
    else:
        if message is not None:
            raise ValueError("Cannot pack a real message without a recipient")
        plaintext = cover_message()
        # No real recipient, agree on a key nobody keeps
        discarded = crypto.generate_key_pair()
        shared = crypto.derive_shared_key(ephemeral_secret, discarded.pub)

    if len(plaintext) != MESSAGE_LENGTH:
        raise MessageLengthError(f"Invalid message length: {len(plaintext)}")

    nonce = os.urandom(crypto.aead_nonce_size())
    ciphertext = crypto.aead_encrypt(shared, nonce, plaintext.encode("utf-8"))
    return MessageEnvelope(
        v=version,
        from_account=from_account,
        encrypt=crypto.public_from_secret(ephemeral_secret),
        iv=b64_encode(nonce),
        cipher=b64_encode(ciphertext),
    )


def _extract(plaintext: bytes) -> Optional[str]:
    try:
        inner = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(inner, dict):
        return None
    message = inner.get("m")
    return message if isinstance(message, str) else None


def unpack(
    crypto: CryptoProvider,
    envelope: MessageEnvelope,
    certificates: Iterable[Certificate],
    now: Optional[datetime] = None,
) -> Optional[UnpackedMessage]:
    """Try each of our certificates in order; the first that opens the envelope is the recipient.

    Returns:
        The matching certificate and plaintext, or ``None`` when the envelope is not for us.
    """
    now = now or utcnow()
    try:
        nonce = b64_decode(envelope.iv)
        ciphertext = b64_decode(envelope.cipher)
    except (binascii.Error, ValueError):
        logger.debug("Envelope iv/cipher are not base64")
        return None

    for cert in certificates:
        if cert.encrypt.sec is None or cert.is_expired(now):
            continue
        try:
            shared = crypto.derive_shared_key(cert.encrypt.sec, envelope.encrypt)
            plaintext = crypto.aead_decrypt(shared, nonce, ciphertext)
        except (InvalidKeyError, InvalidTag, ValueError):
            continue
        message = _extract(plaintext)
        if message is not None:
            return UnpackedMessage(certificate=cert, message=message)
    return None
