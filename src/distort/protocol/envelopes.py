"""Wire envelopes exchanged over the pub/sub transport.

Two kinds travel on the wire, both JSON objects carrying a protocol version
under ``"v"``:

* message envelopes on ``<group>-all`` / ``<group>-<index>`` topics::

    {"v", "fromAccount", "encrypt", "iv", "cipher", "signature"?}

* certificate announcements on ``<group>-certs`` topics::

    {"v", "fromAccount", "key": {"encrypt": {"pub"}, "sign": {"pub"}},
     "expiration", "groups", "socialMedia"?, "signature"}
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..exceptions import EnvelopeDecodeError, UnsupportedVersionError
from ..models import ROOT_ACCOUNT

Raw = Union[bytes, bytearray, str]


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def to_millis(ts: datetime) -> int:
    return (ts - _EPOCH) // _MILLISECOND


def from_millis(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def _dumps(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _load_object(raw: Raw) -> Dict[str, Any]:
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8")
        obj = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EnvelopeDecodeError(f"Could not decode: {e}") from e
    if not isinstance(obj, dict):
        raise EnvelopeDecodeError("Envelope must be a JSON object")
    return obj


def _check_version(obj: Dict[str, Any], supported: Iterable[str]) -> str:
    v = obj.get("v")
    if not v:
        raise UnsupportedVersionError(None)
    if not isinstance(v, str) or v not in tuple(supported):
        raise UnsupportedVersionError(v)
    return v


def _require_str(obj: Dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise EnvelopeDecodeError(f"Field {key!r} must be a non-empty string")
    return value


def _from_account(obj: Dict[str, Any]) -> str:
    value = obj.get("fromAccount")
    if value is None:
        return ROOT_ACCOUNT
    if not isinstance(value, str) or not value:
        raise EnvelopeDecodeError("Field 'fromAccount' must be a non-empty string")
    return value


@dataclass
class MessageEnvelope:
    v: str
    from_account: str
    encrypt: str
    iv: str
    cipher: str
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "v": self.v,
            "fromAccount": self.from_account,
            "encrypt": self.encrypt,
            "iv": self.iv,
            "cipher": self.cipher,
        }
        if self.signature is not None:
            d["signature"] = self.signature
        return d

    def serialize(self) -> bytes:
        return _dumps(self.to_dict())


@dataclass
class CertificateEnvelope:
    v: str
    from_account: str
    encrypt_pub: str
    sign_pub: str
    expiration: int
    groups: List[str]
    signature: str
    social_media: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def expiration_datetime(self) -> datetime:
        return from_millis(self.expiration)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "v": self.v,
            "fromAccount": self.from_account,
            "key": {"encrypt": {"pub": self.encrypt_pub}, "sign": {"pub": self.sign_pub}},
            "expiration": self.expiration,
            "groups": list(self.groups),
            "signature": self.signature,
        }
        if self.social_media:
            d["socialMedia"] = [{"platform": p, "handle": h} for p, h in self.social_media]
        return d

    def serialize(self) -> bytes:
        return _dumps(self.to_dict())


def parse_message_envelope(raw: Raw, supported: Iterable[str]) -> MessageEnvelope:
    """Decode and validate a message envelope.

    Raises:
        UnsupportedVersionError: If ``v`` is missing or not in ``supported``.
        EnvelopeDecodeError: If the payload is not a well-formed envelope.
    """
    obj = _load_object(raw)
    v = _check_version(obj, supported)
    signature = obj.get("signature")
    if signature is not None and not isinstance(signature, str):
        raise EnvelopeDecodeError("Field 'signature' must be a string")
    return MessageEnvelope(
        v=v,
        from_account=_from_account(obj),
        encrypt=_require_str(obj, "encrypt"),
        iv=_require_str(obj, "iv"),
        cipher=_require_str(obj, "cipher"),
        signature=signature,
    )


def parse_certificate_envelope(raw: Raw, supported: Iterable[str]) -> CertificateEnvelope:
    """Decode and validate a certificate announcement.

    Raises:
        UnsupportedVersionError: If ``v`` is missing or not in ``supported``.
        EnvelopeDecodeError: If the payload is not a well-formed announcement.
    """
    obj = _load_object(raw)
    v = _check_version(obj, supported)

    key = obj.get("key")
    if not isinstance(key, dict):
        raise EnvelopeDecodeError("Field 'key' must be an object")
    pubs = []
    for kind in ("encrypt", "sign"):
        part = key.get(kind)
        if not isinstance(part, dict):
            raise EnvelopeDecodeError(f"Field 'key.{kind}' must be an object")
        pubs.append(_require_str(part, "pub"))

    expiration = obj.get("expiration")
    if isinstance(expiration, bool) or not isinstance(expiration, (int, float)):
        raise EnvelopeDecodeError("Field 'expiration' must be a number of milliseconds")
    try:
        from_millis(int(expiration))
    except (OverflowError, ValueError, OSError) as e:
        raise EnvelopeDecodeError("Field 'expiration' is out of range") from e

    groups = obj.get("groups", [])
    if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
        raise EnvelopeDecodeError("Field 'groups' must be a list of strings")

    social: List[Tuple[str, str]] = []
    raw_social = obj.get("socialMedia") or []
    if not isinstance(raw_social, list):
        raise EnvelopeDecodeError("Field 'socialMedia' must be a list")
    for entry in raw_social:
        if not isinstance(entry, dict):
            raise EnvelopeDecodeError("Entries of 'socialMedia' must be objects")
        social.append((_require_str(entry, "platform"), _require_str(entry, "handle")))

    return CertificateEnvelope(
        v=v,
        from_account=_from_account(obj),
        encrypt_pub=pubs[0],
        sign_pub=pubs[1],
        expiration=int(expiration),
        groups=list(groups),
        signature=_require_str(obj, "signature"),
        social_media=social,
    )
