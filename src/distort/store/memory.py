"""Dict-backed implementation of the persistence interface, kept in memory."""
from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, TypeVar

from .base import UNSET, Store
from ..exceptions import NotFoundError, StoreError
from ..models import (
    Account,
    Certificate,
    CertificateStatus,
    Conversation,
    Group,
    InMessage,
    MessageStatus,
    OutMessage,
    Peer,
    SocialMedia,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _copy(record: T) -> T:
    return copy.deepcopy(record)


def _require(table: Dict[str, T], key: str, kind: str) -> T:
    try:
        return table[key]
    except KeyError:
        raise NotFoundError(f"No {kind} with id: {key}") from None


class InMemoryStore(Store):
    """Dictionary-backed store.

    A single ``asyncio.Lock`` serializes every mutation, which makes the
    compound operations atomic with respect to other tasks on the loop.
    Records are deep-copied on the way in and out.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._certificates: Dict[str, Certificate] = {}
        self._accounts: Dict[str, Account] = {}
        self._groups: Dict[str, Group] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._out_messages: Dict[str, OutMessage] = {}
        self._in_messages: Dict[str, InMessage] = {}
        self._peers: Dict[str, Peer] = {}

    # --- Certificates ---
    async def get_certificate(self, cert_id: str) -> Optional[Certificate]:
        cert = self._certificates.get(cert_id)
        return _copy(cert) if cert else None

    async def insert_certificate(self, cert: Certificate) -> Certificate:
        async with self._lock:
            if cert.id in self._certificates:
                raise StoreError(f"Certificate already exists: {cert.id}")
            if cert.is_valid and self._valid_for(cert.peer_id, cert.account_name):
                raise StoreError(
                    f"A valid certificate already exists for: {cert.peer_id}:{cert.account_name}"
                )
            self._certificates[cert.id] = _copy(cert)
        return _copy(cert)

    async def update_certificate(
        self,
        cert_id: str,
        *,
        last_expiration: Optional[datetime] = None,
        groups: Optional[List[str]] = None,
        social_media: Optional[List[SocialMedia]] = None,
    ) -> Certificate:
        async with self._lock:
            cert = _require(self._certificates, cert_id, "certificate")
            if last_expiration is not None:
                cert.last_expiration = last_expiration
            if groups is not None:
                cert.groups = list(groups)
            if social_media is not None:
                cert.social_media = _copy(social_media)
            return _copy(cert)

    async def find_certificates(
        self,
        peer_id: str,
        account_name: Optional[str] = None,
        valid_only: bool = False,
    ) -> List[Certificate]:
        return [
            _copy(c)
            for c in self._certificates.values()
            if c.peer_id == peer_id
            and (account_name is None or c.account_name == account_name)
            and (not valid_only or c.is_valid)
        ]

    def _valid_for(self, peer_id: str, account_name: str) -> List[Certificate]:
        return [
            c
            for c in self._certificates.values()
            if c.peer_id == peer_id and c.account_name == account_name and c.is_valid
        ]

    async def find_valid_certificate(
        self,
        peer_id: str,
        account_name: str,
        now: Optional[datetime] = None,
    ) -> Optional[Certificate]:
        candidates = [
            c for c in self._valid_for(peer_id, account_name) if now is None or not c.is_expired(now)
        ]
        if not candidates:
            return None
        return _copy(max(candidates, key=lambda c: c.last_expiration))

    async def find_matching_certificate(
        self,
        peer_id: str,
        account_name: str,
        encrypt_pub: str,
        sign_pub: str,
    ) -> Optional[Certificate]:
        for c in self._valid_for(peer_id, account_name):
            if c.encrypt.pub == encrypt_pub and c.sign.pub == sign_pub:
                return _copy(c)
        return None

    async def find_owned_certificates(self, peer_id: str, now: datetime) -> List[Certificate]:
        return [
            _copy(c)
            for c in self._certificates.values()
            if c.peer_id == peer_id and c.is_owned and not c.is_expired(now)
        ]

    async def replace_valid_certificate(self, cert: Certificate) -> int:
        async with self._lock:
            stale = self._valid_for(cert.peer_id, cert.account_name)
            for old in stale:
                old.status = CertificateStatus.INVALIDATED
            stored = _copy(cert)
            stored.status = CertificateStatus.VALID
            self._certificates[stored.id] = stored
            return len(stale)

    async def invalidate_certificates(self, peer_id: str, account_name: str) -> int:
        async with self._lock:
            stale = self._valid_for(peer_id, account_name)
            for cert in stale:
                cert.status = CertificateStatus.INVALIDATED
            return len(stale)

    # --- Accounts ---
    async def get_account(self, peer_id: str, account_name: str) -> Optional[Account]:
        for a in self._accounts.values():
            if a.peer_id == peer_id and a.account_name == account_name:
                return _copy(a)
        return None

    async def get_account_by_id(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return _copy(account) if account else None

    async def find_accounts(self, peer_id: str, enabled: Optional[bool] = None) -> List[Account]:
        return [
            _copy(a)
            for a in self._accounts.values()
            if a.peer_id == peer_id and (enabled is None or a.enabled == enabled)
        ]

    async def insert_account(self, account: Account) -> Account:
        async with self._lock:
            for a in self._accounts.values():
                if a.peer_id == account.peer_id and a.account_name == account.account_name:
                    raise StoreError(f"Account already exists: {account.account_name}")
            self._accounts[account.id] = _copy(account)
        return _copy(account)

    async def update_account(
        self,
        account_id: str,
        *,
        enabled: Any = UNSET,
        active_group_id: Any = UNSET,
    ) -> Account:
        async with self._lock:
            account = _require(self._accounts, account_id, "account")
            if enabled is not UNSET:
                account.enabled = bool(enabled)
            if active_group_id is not UNSET:
                account.active_group_id = active_group_id
            return _copy(account)

    async def delete_account(self, account_id: str) -> None:
        async with self._lock:
            account = _require(self._accounts, account_id, "account")
            for group in [
                g
                for g in self._groups.values()
                if g.peer_id == account.peer_id and g.account_name == account.account_name
            ]:
                self._drop_group(group.id)
            for pid in [pid for pid, p in self._peers.items() if p.owner_id == account_id]:
                del self._peers[pid]
            del self._accounts[account_id]

    # --- Groups ---
    async def get_group(self, group_id: str) -> Optional[Group]:
        group = self._groups.get(group_id)
        return _copy(group) if group else None

    async def find_group(self, peer_id: str, account_name: str, name: str) -> Optional[Group]:
        for g in self._groups.values():
            if g.peer_id == peer_id and g.account_name == account_name and g.name == name:
                return _copy(g)
        return None

    async def find_groups(self, peer_id: str, account_name: Optional[str] = None) -> List[Group]:
        return [
            _copy(g)
            for g in self._groups.values()
            if g.peer_id == peer_id and (account_name is None or g.account_name == account_name)
        ]

    async def insert_group(self, group: Group) -> Group:
        async with self._lock:
            for g in self._groups.values():
                if (g.peer_id, g.account_name, g.name) == (group.peer_id, group.account_name, group.name):
                    raise StoreError(f"Already a member of group: {group.name}")
            self._groups[group.id] = _copy(group)
        return _copy(group)

    async def update_group(self, group_id: str, *, subgroup_index: int) -> Group:
        async with self._lock:
            group = _require(self._groups, group_id, "group")
            group.subgroup_index = subgroup_index
            return _copy(group)

    async def delete_group(self, group_id: str) -> None:
        async with self._lock:
            _require(self._groups, group_id, "group")
            self._drop_group(group_id)

    def _drop_group(self, group_id: str) -> None:
        del self._groups[group_id]
        doomed = {cid for cid, c in self._conversations.items() if c.group_id == group_id}
        for cid in doomed:
            del self._conversations[cid]
        for table in (self._out_messages, self._in_messages):
            for mid in [mid for mid, m in table.items() if m.conversation_id in doomed]:
                del table[mid]
        logger.debug("Deleted group %s with %d conversation(s)", group_id, len(doomed))

    # --- Conversations ---
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return _copy(conversation) if conversation else None

    def _conversation_for(self, group_id: str, peer_id: str, account_name: str) -> Optional[Conversation]:
        for c in self._conversations.values():
            if c.group_id == group_id and c.peer_id == peer_id and c.account_name == account_name:
                return c
        return None

    async def find_conversation(
        self, group_id: str, peer_id: str, account_name: str
    ) -> Optional[Conversation]:
        conversation = self._conversation_for(group_id, peer_id, account_name)
        return _copy(conversation) if conversation else None

    async def find_conversations(self, group_id: str) -> List[Conversation]:
        return [_copy(c) for c in self._conversations.values() if c.group_id == group_id]

    async def get_or_create_conversation(
        self, group: Group, owner_id: str, peer_id: str, account_name: str
    ) -> Conversation:
        async with self._lock:
            conversation = self._conversation_for(group.id, peer_id, account_name)
            if conversation is None:
                conversation = Conversation(
                    group_id=group.id,
                    owner_id=owner_id,
                    peer_id=peer_id,
                    account_name=account_name,
                )
                self._conversations[conversation.id] = conversation
            return _copy(conversation)

    async def reserve_conversation_index(self, conversation_id: str) -> int:
        async with self._lock:
            conversation = _require(self._conversations, conversation_id, "conversation")
            index = conversation.height
            conversation.height += 1
            group = self._groups.get(conversation.group_id)
            if group is not None:
                group.height += 1
            return index

    async def mark_conversation_read(self, conversation_id: str, index: int) -> Conversation:
        async with self._lock:
            conversation = _require(self._conversations, conversation_id, "conversation")
            conversation.last_read_index = max(conversation.last_read_index, index)
            return _copy(conversation)

    async def touch_conversation(self, conversation_id: str, when: datetime) -> None:
        async with self._lock:
            _require(self._conversations, conversation_id, "conversation").latest_status_change = when

    # --- Messages ---
    async def insert_out_message(self, message: OutMessage) -> OutMessage:
        async with self._lock:
            _require(self._conversations, message.conversation_id, "conversation")
            self._out_messages[message.id] = _copy(message)
        return _copy(message)

    async def get_out_message(self, message_id: str) -> Optional[OutMessage]:
        message = self._out_messages.get(message_id)
        return _copy(message) if message else None

    async def find_enqueued_out_messages(self, group_id: str) -> List[OutMessage]:
        conversations = {cid for cid, c in self._conversations.items() if c.group_id == group_id}
        queued = [
            m
            for m in self._out_messages.values()
            if m.status == MessageStatus.ENQUEUED and m.conversation_id in conversations
        ]
        return [_copy(m) for m in sorted(queued, key=lambda m: m.last_status_change)]

    async def find_out_messages(self, conversation_id: str) -> List[OutMessage]:
        return sorted(
            (_copy(m) for m in self._out_messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.index,
        )

    async def transition_out_message(
        self,
        message_id: str,
        expected: MessageStatus,
        status: MessageStatus,
        when: Optional[datetime] = None,
    ) -> bool:
        async with self._lock:
            message = _require(self._out_messages, message_id, "message")
            if message.status != expected:
                return False
            message.status = status
            message.last_status_change = when or utcnow()
            return True

    async def insert_in_message(self, message: InMessage) -> InMessage:
        async with self._lock:
            _require(self._conversations, message.conversation_id, "conversation")
            self._in_messages[message.id] = _copy(message)
        return _copy(message)

    async def find_in_messages(self, conversation_id: str) -> List[InMessage]:
        return sorted(
            (_copy(m) for m in self._in_messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.index,
        )

    # --- Peers ---
    def _check_nickname(self, owner_id: str, nickname: Optional[str], exclude: Optional[str] = None) -> None:
        if nickname is None:
            return
        for p in self._peers.values():
            if p.owner_id == owner_id and p.nickname == nickname and p.id != exclude:
                raise StoreError(f"Nickname already in use: {nickname}")

    async def insert_peer(self, peer: Peer) -> Peer:
        async with self._lock:
            for p in self._peers.values():
                if (p.owner_id, p.peer_id, p.account_name) == (peer.owner_id, peer.peer_id, peer.account_name):
                    raise StoreError(f"Peer already stored: {peer.peer_id}:{peer.account_name}")
            self._check_nickname(peer.owner_id, peer.nickname)
            self._peers[peer.id] = _copy(peer)
        return _copy(peer)

    async def find_peer(self, owner_id: str, peer_id: str, account_name: str) -> Optional[Peer]:
        for p in self._peers.values():
            if p.owner_id == owner_id and p.peer_id == peer_id and p.account_name == account_name:
                return _copy(p)
        return None

    async def update_peer(self, peer_record_id: str, *, cert_id: str, nickname: Optional[str]) -> Peer:
        async with self._lock:
            peer = _require(self._peers, peer_record_id, "peer")
            self._check_nickname(peer.owner_id, nickname, exclude=peer.id)
            peer.cert_id = cert_id
            peer.nickname = nickname
            return _copy(peer)

    async def delete_peer(self, peer_record_id: str) -> None:
        async with self._lock:
            _require(self._peers, peer_record_id, "peer")
            del self._peers[peer_record_id]

    async def find_peers(self, owner_id: str) -> List[Peer]:
        return [_copy(p) for p in self._peers.values() if p.owner_id == owner_id]

    async def find_peer_by_nickname(self, owner_id: str, nickname: str) -> Optional[Peer]:
        for p in self._peers.values():
            if p.owner_id == owner_id and p.nickname == nickname:
                return _copy(p)
        return None

    async def repoint_peers(self, peer_id: str, account_name: str, cert_id: str) -> int:
        async with self._lock:
            changed = 0
            for p in self._peers.values():
                if p.peer_id == peer_id and p.account_name == account_name and p.cert_id != cert_id:
                    p.cert_id = cert_id
                    changed += 1
            return changed
