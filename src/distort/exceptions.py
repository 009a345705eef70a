"""Exception hierarchy for distort.

Decode errors and "not for us" conditions are routine on an anonymity
overlay and are handled quietly by the inbound handlers. Invariant
violations are programming or configuration errors and always propagate.
"""
from __future__ import annotations


class DistortError(Exception):
    """Base class for all errors raised by this package."""


# --- Protocol decode errors ---
class EnvelopeDecodeError(DistortError):
    """Raised when an inbound envelope is not well-formed JSON or misses fields."""


class UnsupportedVersionError(EnvelopeDecodeError):
    """Raised when an envelope carries no version or one we do not speak."""

    def __init__(self, version: object):
        self.version = version
        if version is None:
            super().__init__("No version given")
        else:
            super().__init__(f"No support for given version: {version}")


# --- Cryptographic failures ---
class InvalidSignatureError(DistortError):
    """Raised when a signature does not verify against the given public key."""


class InvalidKeyError(DistortError):
    """Raised when a key string cannot be decoded into a curve point or scalar."""


# --- Invariant violations ---
class MessageLengthError(DistortError):
    """Raised when a normalized message is not exactly MESSAGE_LENGTH characters."""


class MessageTooLongError(DistortError):
    """Raised when a plaintext cannot be padded into a single message."""


class TopicFormatError(DistortError):
    """Raised when a topic does not follow the ``<name>-(all|<index>)`` grammar."""


class UnknownGroupError(DistortError):
    """Raised when a message arrives on a topic no local group is subscribed to."""


class InvalidLevelError(DistortError, ValueError):
    """Raised when a group tree level is outside ``[0, MAX_PATH_DEPTH]``."""


# --- Transport / store failures ---
class TransportError(DistortError):
    """Raised when the pub/sub transport fails to subscribe, unsubscribe or publish."""


class StoreError(DistortError):
    """Raised when the persistence layer cannot complete an operation."""


class NotFoundError(StoreError):
    """Raised when a referenced record does not exist."""


class AccountError(DistortError):
    """Raised when an account operation is not permitted."""
