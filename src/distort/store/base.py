"""Persistence interface consumed by the protocols.

Compound mutations that protect an invariant are single methods so that an
implementation can make them atomic: replacing the valid certificate of an
identity, reserving the next conversation index, and status transitions of
queued messages. Partial updates only touch the named fields so that
concurrent writers of different fields never overwrite each other.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional

from ..models import (
    Account,
    Certificate,
    Conversation,
    Group,
    InMessage,
    MessageStatus,
    OutMessage,
    Peer,
    SocialMedia,
)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class CertificateStore(ABC):
    @abstractmethod
    async def get_certificate(self, cert_id: str) -> Optional[Certificate]:
        pass

    @abstractmethod
    async def insert_certificate(self, cert: Certificate) -> Certificate:
        pass

    @abstractmethod
    async def update_certificate(
        self,
        cert_id: str,
        *,
        last_expiration: Optional[datetime] = None,
        groups: Optional[List[str]] = None,
        social_media: Optional[List[SocialMedia]] = None,
    ) -> Certificate:
        """Update only the given fields. Raises NotFoundError for an unknown id."""

    @abstractmethod
    async def find_certificates(
        self,
        peer_id: str,
        account_name: Optional[str] = None,
        valid_only: bool = False,
    ) -> List[Certificate]:
        pass

    @abstractmethod
    async def find_valid_certificate(
        self,
        peer_id: str,
        account_name: str,
        now: Optional[datetime] = None,
    ) -> Optional[Certificate]:
        """Valid certificate of an identity; when ``now`` is given it must also be unexpired."""

    @abstractmethod
    async def find_matching_certificate(
        self,
        peer_id: str,
        account_name: str,
        encrypt_pub: str,
        sign_pub: str,
    ) -> Optional[Certificate]:
        """Valid certificate of an identity carrying exactly these public keys."""

    @abstractmethod
    async def find_owned_certificates(self, peer_id: str, now: datetime) -> List[Certificate]:
        """Unexpired certificates of ``peer_id`` for which we hold the encryption secret."""

    @abstractmethod
    async def replace_valid_certificate(self, cert: Certificate) -> int:
        """Atomically invalidate every valid certificate of the identity and insert ``cert``.

        Returns:
            Number of certificates invalidated.
        """

    @abstractmethod
    async def invalidate_certificates(self, peer_id: str, account_name: str) -> int:
        """Invalidate every valid certificate of the identity; returns how many changed."""


class Store(CertificateStore):
    # --- Accounts ---
    @abstractmethod
    async def get_account(self, peer_id: str, account_name: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_account_by_id(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def find_accounts(self, peer_id: str, enabled: Optional[bool] = None) -> List[Account]:
        pass

    @abstractmethod
    async def insert_account(self, account: Account) -> Account:
        """Raises StoreError if ``(peer_id, account_name)`` already exists."""

    @abstractmethod
    async def update_account(
        self,
        account_id: str,
        *,
        enabled: Any = UNSET,
        active_group_id: Any = UNSET,
    ) -> Account:
        pass

    @abstractmethod
    async def delete_account(self, account_id: str) -> None:
        """Remove the account with its groups, their conversations and messages, and its peers."""

    # --- Groups ---
    @abstractmethod
    async def get_group(self, group_id: str) -> Optional[Group]:
        pass

    @abstractmethod
    async def find_group(self, peer_id: str, account_name: str, name: str) -> Optional[Group]:
        pass

    @abstractmethod
    async def find_groups(self, peer_id: str, account_name: Optional[str] = None) -> List[Group]:
        pass

    @abstractmethod
    async def insert_group(self, group: Group) -> Group:
        """Raises StoreError if the account is already a member of the group name."""

    @abstractmethod
    async def update_group(self, group_id: str, *, subgroup_index: int) -> Group:
        pass

    @abstractmethod
    async def delete_group(self, group_id: str) -> None:
        """Remove the group together with its conversations and their messages."""

    # --- Conversations ---
    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def find_conversation(
        self, group_id: str, peer_id: str, account_name: str
    ) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def find_conversations(self, group_id: str) -> List[Conversation]:
        pass

    @abstractmethod
    async def get_or_create_conversation(
        self, group: Group, owner_id: str, peer_id: str, account_name: str
    ) -> Conversation:
        pass

    @abstractmethod
    async def reserve_conversation_index(self, conversation_id: str) -> int:
        """Atomically return the conversation height and increment it together with the group height."""

    @abstractmethod
    async def mark_conversation_read(self, conversation_id: str, index: int) -> Conversation:
        """Raise ``last_read_index`` to ``index``; it never moves backwards."""

    @abstractmethod
    async def touch_conversation(self, conversation_id: str, when: datetime) -> None:
        pass

    # --- Messages ---
    @abstractmethod
    async def insert_out_message(self, message: OutMessage) -> OutMessage:
        pass

    @abstractmethod
    async def get_out_message(self, message_id: str) -> Optional[OutMessage]:
        pass

    @abstractmethod
    async def find_enqueued_out_messages(self, group_id: str) -> List[OutMessage]:
        """Enqueued messages of the group's conversations, oldest ``last_status_change`` first."""

    @abstractmethod
    async def find_out_messages(self, conversation_id: str) -> List[OutMessage]:
        pass

    @abstractmethod
    async def transition_out_message(
        self,
        message_id: str,
        expected: MessageStatus,
        status: MessageStatus,
        when: Optional[datetime] = None,
    ) -> bool:
        """Move a message from ``expected`` to ``status``; False if it was not in ``expected``."""

    @abstractmethod
    async def insert_in_message(self, message: InMessage) -> InMessage:
        pass

    @abstractmethod
    async def find_in_messages(self, conversation_id: str) -> List[InMessage]:
        pass

    # --- Peers ---
    @abstractmethod
    async def insert_peer(self, peer: Peer) -> Peer:
        pass

    @abstractmethod
    async def find_peers(self, owner_id: str) -> List[Peer]:
        pass

    @abstractmethod
    async def find_peer_by_nickname(self, owner_id: str, nickname: str) -> Optional[Peer]:
        pass

    @abstractmethod
    async def find_peer(self, owner_id: str, peer_id: str, account_name: str) -> Optional[Peer]:
        pass

    @abstractmethod
    async def update_peer(self, peer_record_id: str, *, cert_id: str, nickname: Optional[str]) -> Peer:
        """Raises StoreError if ``nickname`` is taken by another peer of the same owner."""

    @abstractmethod
    async def delete_peer(self, peer_record_id: str) -> None:
        pass

    @abstractmethod
    async def repoint_peers(self, peer_id: str, account_name: str, cert_id: str) -> int:
        """Point every stored peer of this identity at ``cert_id``; returns how many changed."""
