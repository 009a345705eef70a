"""Records persisted by a distort node.

These are plain dataclasses; the store decides how they are kept. Ids are
random hex strings assigned at construction time and timestamps are
timezone-aware UTC datetimes.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

ROOT_ACCOUNT = "root"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class CertificateStatus(str, Enum):
    VALID = "valid"
    INVALIDATED = "invalidated"


class MessageStatus(str, Enum):
    ENQUEUED = "enqueued"
    CANCELLED = "cancelled"
    SENT = "sent"


@dataclass(frozen=True)
class KeyPair:
    """Public key as ``"<x-hex>:<y-hex>"`` and, for our own keys, the secret scalar in hex."""

    pub: str
    sec: Optional[str] = None

    def public_only(self) -> "KeyPair":
        return KeyPair(pub=self.pub)


@dataclass
class SocialMedia:
    platform: str
    handle: str
    key: Optional[str] = None  # local credentials, never published


@dataclass
class Certificate:
    """Identity record binding an account to an encryption and a signing key pair."""

    peer_id: str
    encrypt: KeyPair
    sign: KeyPair
    last_expiration: datetime
    account_name: str = ROOT_ACCOUNT
    groups: List[str] = field(default_factory=list)
    social_media: List[SocialMedia] = field(default_factory=list)
    status: CertificateStatus = CertificateStatus.VALID
    id: str = field(default_factory=new_id)

    @property
    def is_owned(self) -> bool:
        """True when we hold the secret keys, i.e. the certificate is one of ours."""
        return self.encrypt.sec is not None

    @property
    def is_valid(self) -> bool:
        return self.status == CertificateStatus.VALID

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.last_expiration <= (now or utcnow())


@dataclass
class Account:
    peer_id: str
    cert_id: str
    account_name: str = ROOT_ACCOUNT
    enabled: bool = True
    active_group_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def is_root(self) -> bool:
        return self.account_name == ROOT_ACCOUNT


@dataclass
class Group:
    """Membership of a local account in a named group at one group tree node.

    ``height`` counts every message sequenced in any conversation of the group.
    """

    peer_id: str
    account_name: str
    name: str
    subgroup_index: int
    height: int = 0
    id: str = field(default_factory=new_id)

    @property
    def membership(self) -> str:
        return f"{self.name}:{self.subgroup_index}"


@dataclass
class Conversation:
    group_id: str
    owner_id: str
    peer_id: str
    account_name: str = ROOT_ACCOUNT
    height: int = 0
    last_read_index: int = -1
    latest_status_change: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @property
    def unread(self) -> int:
        return self.height - 1 - self.last_read_index


@dataclass
class OutMessage:
    conversation_id: str
    index: int
    message: str
    to_cert_id: str
    status: MessageStatus = MessageStatus.ENQUEUED
    last_status_change: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class InMessage:
    conversation_id: str
    index: int
    message: str
    verified: bool
    date_received: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class Peer:
    """Local shortcut (optionally nicknamed) to a remote identity's certificate."""

    owner_id: str
    peer_id: str
    cert_id: str
    account_name: str = ROOT_ACCOUNT
    nickname: Optional[str] = None
    id: str = field(default_factory=new_id)
