from __future__ import annotations

import base64
import secrets


def random_hex(length: int) -> str:
    """Return ``length`` cryptographically random hexadecimal characters."""
    if length <= 0:
        return ""
    return secrets.token_hex((length + 1) // 2)[:length]


def b64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)
