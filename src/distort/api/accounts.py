from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional, Union

from .subscriptions import SubscriptionManager
from ..codec.message_codec import normalize_message
from ..context import NodeContext
from ..exceptions import AccountError, NotFoundError, TransportError
from ..models import (
    ROOT_ACCOUNT,
    Account,
    Certificate,
    Conversation,
    Group,
    InMessage,
    MessageStatus,
    OutMessage,
    Peer,
    utcnow,
)
from ..protocol.certificates import CertificateProtocol
from ..protocol.group_tree import random_from_level, validate_level
from ..protocol.topics import format_peer_string

logger = logging.getLogger(__name__)

ConversationEntry = Union[InMessage, OutMessage]


class AccountService:
    """Local account, group, peer and conversation management for one node.

    Every account name is scoped to the node's transport identity.
    """

    def __init__(
        self,
        ctx: NodeContext,
        subscriptions: SubscriptionManager,
        certificates: CertificateProtocol,
    ):
        self._ctx = ctx
        self._subscriptions = subscriptions
        self._certificates = certificates

    # --- Accounts ---
    async def create_certificate(self, account_name: str = ROOT_ACCOUNT) -> Certificate:
        """Generate and store a fresh self-owned certificate."""
        ctx = self._ctx
        encrypt = await asyncio.to_thread(ctx.crypto.generate_key_pair)
        sign = await asyncio.to_thread(ctx.crypto.generate_key_pair)
        cert = Certificate(
            peer_id=ctx.peer_id,
            account_name=account_name,
            encrypt=encrypt,
            sign=sign,
            last_expiration=utcnow() + timedelta(seconds=ctx.config.certificate_lifetime_seconds),
        )
        return await ctx.store.insert_certificate(cert)

    async def create_account(self, account_name: str = ROOT_ACCOUNT) -> Account:
        if not account_name:
            raise AccountError("Account name cannot be empty")
        if await self._ctx.store.get_account(self._ctx.peer_id, account_name) is not None:
            raise AccountError(f"Account already exists: {account_name}")
        cert = await self.create_certificate(account_name)
        account = await self._ctx.store.insert_account(
            Account(peer_id=self._ctx.peer_id, account_name=account_name, cert_id=cert.id)
        )
        logger.info("Created account %s for peer: %s", account_name, self._ctx.peer_id)
        return account

    async def get_account(self, account_name: str = ROOT_ACCOUNT) -> Account:
        account = await self._ctx.store.get_account(self._ctx.peer_id, account_name)
        if account is None:
            raise NotFoundError(f"No such account: {account_name}")
        return account

    async def list_accounts(self) -> List[Account]:
        return await self._ctx.store.find_accounts(self._ctx.peer_id)

    async def get_certificate(self, account_name: str = ROOT_ACCOUNT) -> Certificate:
        account = await self.get_account(account_name)
        cert = await self._ctx.store.get_certificate(account.cert_id)
        if cert is None:
            raise NotFoundError(f"Certificate of account {account_name} is missing")
        return cert

    async def set_account_enabled(self, account_name: str, enabled: bool) -> Account:
        """Enable or disable an account, (un)subscribing its groups accordingly.

        Raises:
            AccountError: When disabling the root account.
        """
        account = await self.get_account(account_name)
        if account.is_root and not enabled:
            raise AccountError("Cannot disable the root account")
        if account.enabled == enabled:
            return account
        groups = await self._ctx.store.find_groups(self._ctx.peer_id, account_name)
        await self._set_subscribed(groups, enabled)
        return await self._ctx.store.update_account(account.id, enabled=enabled)

    async def _set_subscribed(self, groups: List[Group], subscribed: bool) -> None:
        """(Un)subscribe every group, undoing the finished ones if one fails."""

        async def apply(group: Group, on: bool) -> None:
            if on:
                await self._subscriptions.subscribe(group.name, group.subgroup_index)
            else:
                await self._subscriptions.unsubscribe(group.name, group.subgroup_index)

        done: List[Group] = []
        try:
            for group in groups:
                await apply(group, subscribed)
                done.append(group)
        except TransportError:
            for group in reversed(done):
                try:
                    await apply(group, not subscribed)
                except TransportError:
                    logger.exception("Could not restore subscription of %s", group.membership)
            raise

    async def delete_account(self, account_name: str) -> None:
        """Delete a non-root account with its groups, conversations and peers.

        Its certificates are invalidated, so the name can be created again
        with fresh keys.

        Raises:
            AccountError: When deleting the root account.
        """
        if account_name == ROOT_ACCOUNT:
            raise AccountError("Cannot delete the root account")
        account = await self.get_account(account_name)
        if account.enabled:
            groups = await self._ctx.store.find_groups(self._ctx.peer_id, account_name)
            await self._set_subscribed(groups, False)
        await self._certificates.revoke_certificates(account_name)
        await self._ctx.store.delete_account(account.id)
        logger.info("Deleted account %s of peer: %s", account_name, self._ctx.peer_id)

    # --- Groups ---
    async def _sync_certificate_groups(self, account: Account) -> Certificate:
        groups = await self._ctx.store.find_groups(self._ctx.peer_id, account.account_name)
        return await self._ctx.store.update_certificate(
            account.cert_id, groups=sorted(g.membership for g in groups)
        )

    async def get_group(self, account_name: str, group_name: str) -> Group:
        group = await self._ctx.store.find_group(self._ctx.peer_id, account_name, group_name)
        if group is None:
            raise NotFoundError(f"Account {account_name} is not a member of group: {group_name}")
        return group

    async def join_group(self, account_name: str, group_name: str, level: int) -> Group:
        """Join ``group_name`` at a random subgroup of tree ``level``.

        Joining a group the account is already in moves it to the new
        subgroup; the new topic is subscribed before the old one is released.
        The account's first group becomes its active group.
        """
        validate_level(level)
        if not group_name:
            raise ValueError("Group name cannot be empty")
        account = await self.get_account(account_name)
        store = self._ctx.store
        subgroup_index = random_from_level(level)

        group = await store.find_group(self._ctx.peer_id, account_name, group_name)
        if group is None:
            group = await store.insert_group(
                Group(
                    peer_id=self._ctx.peer_id,
                    account_name=account_name,
                    name=group_name,
                    subgroup_index=subgroup_index,
                )
            )
            if account.enabled:
                try:
                    await self._subscriptions.subscribe(group_name, subgroup_index)
                except TransportError:
                    await store.delete_group(group.id)
                    raise
        elif group.subgroup_index != subgroup_index:
            if account.enabled:
                await self._subscriptions.subscribe(group_name, subgroup_index)
                try:
                    await self._subscriptions.unsubscribe(group_name, group.subgroup_index)
                except TransportError:
                    await self._subscriptions.unsubscribe(group_name, subgroup_index)
                    raise
            group = await store.update_group(group.id, subgroup_index=subgroup_index)

        await self._sync_certificate_groups(account)
        if account.active_group_id is None:
            await store.update_account(account.id, active_group_id=group.id)
        logger.debug("Account %s joined %s", account_name, group.membership)
        return group

    async def leave_group(self, account_name: str, group_name: str) -> None:
        """Leave a group, dropping its conversations and messages."""
        account = await self.get_account(account_name)
        group = await self.get_group(account_name, group_name)
        if account.enabled:
            await self._subscriptions.unsubscribe(group.name, group.subgroup_index)
        await self._ctx.store.delete_group(group.id)
        await self._sync_certificate_groups(account)
        if account.active_group_id == group.id:
            await self._ctx.store.update_account(account.id, active_group_id=None)

    async def set_active_group(self, account_name: str, group_name: str) -> Account:
        account = await self.get_account(account_name)
        group = await self.get_group(account_name, group_name)
        return await self._ctx.store.update_account(account.id, active_group_id=group.id)

    async def list_groups(self, account_name: str = ROOT_ACCOUNT) -> List[Group]:
        await self.get_account(account_name)
        return await self._ctx.store.find_groups(self._ctx.peer_id, account_name)

    # --- Peers ---
    async def add_peer(
        self,
        account_name: str,
        peer_id: str,
        remote_account: str = ROOT_ACCOUNT,
        nickname: Optional[str] = None,
    ) -> Peer:
        """Store a shortcut to a remote identity, linked to its current certificate.

        Adding an identity that is already stored updates its nickname.

        Raises:
            NotFoundError: If no valid certificate of the identity is known.
        """
        account = await self.get_account(account_name)
        store = self._ctx.store
        cert = await store.find_valid_certificate(peer_id, remote_account)
        if cert is None:
            raise NotFoundError(
                f"No valid certificate for: {format_peer_string(peer_id, remote_account)}"
            )
        existing = await store.find_peer(account.id, peer_id, remote_account)
        if existing is not None:
            return await store.update_peer(existing.id, cert_id=cert.id, nickname=nickname)
        return await store.insert_peer(
            Peer(
                owner_id=account.id,
                peer_id=peer_id,
                account_name=remote_account,
                cert_id=cert.id,
                nickname=nickname,
            )
        )

    async def remove_peer(
        self, account_name: str, peer_id: str, remote_account: str = ROOT_ACCOUNT
    ) -> None:
        account = await self.get_account(account_name)
        peer = await self._ctx.store.find_peer(account.id, peer_id, remote_account)
        if peer is None:
            raise NotFoundError(f"No such peer: {format_peer_string(peer_id, remote_account)}")
        await self._ctx.store.delete_peer(peer.id)

    async def list_peers(self, account_name: str = ROOT_ACCOUNT) -> List[Peer]:
        account = await self.get_account(account_name)
        return await self._ctx.store.find_peers(account.id)

    # --- Messages ---
    async def _resolve_recipient(
        self,
        account: Account,
        to_peer_id: Optional[str],
        to_account: str,
        to_nickname: Optional[str],
    ) -> Certificate:
        if to_nickname is not None:
            peer = await self._ctx.store.find_peer_by_nickname(account.id, to_nickname)
            if peer is None:
                raise NotFoundError(f"No peer with nickname: {to_nickname}")
            to_peer_id, to_account = peer.peer_id, peer.account_name
        if to_peer_id is None:
            raise ValueError("A recipient peer id or nickname is required")
        cert = await self._ctx.store.find_valid_certificate(to_peer_id, to_account, utcnow())
        if cert is None:
            raise NotFoundError(f"No valid certificate for: {to_peer_id}:{to_account}")
        return cert

    async def enqueue_message(
        self,
        account_name: str,
        group_name: str,
        text: str,
        to_peer_id: Optional[str] = None,
        to_account: str = ROOT_ACCOUNT,
        to_nickname: Optional[str] = None,
    ) -> OutMessage:
        """Queue ``text`` for the recipient's current certificate in a group.

        The group becomes the account's active group so that the message is
        eventually dequeued.

        Raises:
            MessageTooLongError: If the text can never be sealed into one message.
            NotFoundError: If the group, the peer or its certificate is unknown.
        """
        normalize_message(text)
        account = await self.get_account(account_name)
        group = await self.get_group(account_name, group_name)
        cert = await self._resolve_recipient(account, to_peer_id, to_account, to_nickname)

        store = self._ctx.store
        if account.active_group_id != group.id:
            await store.update_account(account.id, active_group_id=group.id)
        conversation = await store.get_or_create_conversation(
            group, account.id, cert.peer_id, cert.account_name
        )
        out = await store.insert_out_message(
            OutMessage(
                conversation_id=conversation.id,
                index=await store.reserve_conversation_index(conversation.id),
                message=text,
                to_cert_id=cert.id,
            )
        )
        await store.touch_conversation(conversation.id, out.last_status_change)
        return out

    async def cancel_message(self, message_id: str) -> bool:
        """Cancel a message that is still enqueued; False if it already left the queue."""
        if await self._ctx.store.get_out_message(message_id) is None:
            raise NotFoundError(f"No such message: {message_id}")
        return await self._ctx.store.transition_out_message(
            message_id, MessageStatus.ENQUEUED, MessageStatus.CANCELLED
        )

    async def list_conversations(
        self, account_name: str = ROOT_ACCOUNT, group_name: Optional[str] = None
    ) -> List[Conversation]:
        await self.get_account(account_name)
        if group_name is not None:
            groups = [await self.get_group(account_name, group_name)]
        else:
            groups = await self._ctx.store.find_groups(self._ctx.peer_id, account_name)
        conversations: List[Conversation] = []
        for group in groups:
            conversations.extend(await self._ctx.store.find_conversations(group.id))
        conversations.sort(key=lambda c: c.latest_status_change, reverse=True)
        return conversations

    async def read_conversation(
        self,
        account_name: str,
        group_name: str,
        peer_id: str,
        remote_account: str = ROOT_ACCOUNT,
        start: int = 0,
        end: Optional[int] = None,
    ) -> List[ConversationEntry]:
        """Inbound and outbound messages of a conversation merged by index, ``start <= index < end``.

        At most ``max_read`` of the newest indices in the range are returned.
        Reading marks the conversation as read up to the last returned index.
        """
        store = self._ctx.store
        group = await self.get_group(account_name, group_name)
        conversation = await store.find_conversation(group.id, peer_id, remote_account)
        if conversation is None:
            return []
        if end is None:
            end = conversation.height
        if end - start > self._ctx.config.max_read:
            start = end - self._ctx.config.max_read
        entries: List[ConversationEntry] = [
            *await store.find_in_messages(conversation.id),
            *await store.find_out_messages(conversation.id),
        ]
        selected = sorted((e for e in entries if start <= e.index < end), key=lambda e: e.index)
        if selected:
            await store.mark_conversation_read(conversation.id, selected[-1].index)
        return selected
