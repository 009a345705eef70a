from .message_codec import (
    MESSAGE_LENGTH,
    UnpackedMessage,
    cover_message,
    normalize_message,
    pack,
    unpack,
)

__all__ = [
    "MESSAGE_LENGTH",
    "UnpackedMessage",
    "cover_message",
    "normalize_message",
    "pack",
    "unpack",
]
