"""Outbound dequeue cycle and inbound handler for group message topics."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from .envelopes import MessageEnvelope, parse_message_envelope
from .group_tree import is_valid_path, random_path
from .topics import message_topic, parse_message_topic, path_intersects
from ..codec.message_codec import pack, unpack
from ..context import NodeContext
from ..exceptions import EnvelopeDecodeError, InvalidKeyError, InvalidSignatureError, UnknownGroupError
from ..models import Account, Certificate, Group, InMessage, MessageStatus, OutMessage, utcnow
from ..transport.base import PubSubMessage

logger = logging.getLogger(__name__)


class MessageProtocol:
    """Seals queued messages (or cover traffic) for broadcast and opens inbound ones.

    Together with the scheduler this is the only writer of message status
    and conversation heights.
    """

    def __init__(self, ctx: NodeContext):
        self._ctx = ctx

    # --- Outbound ---
    async def _select(
        self, group: Group, path: Sequence[int], queued: List[OutMessage]
    ) -> tuple[Optional[OutMessage], Optional[Certificate]]:
        for out in queued:
            cert = await self._ctx.store.get_certificate(out.to_cert_id)
            if cert is None:
                logger.debug("Recipient certificate of message %s is gone", out.id)
                continue
            if path_intersects(group.name, path, cert.groups):
                return out, cert
        return None, None

    def _seal(
        self,
        account_name: str,
        sign_secret: str,
        message: Optional[str],
        recipient: Optional[Certificate],
    ) -> MessageEnvelope:
        crypto = self._ctx.crypto
        envelope = pack(crypto, self._ctx.config.protocol_version, account_name, message, recipient)
        envelope.signature = crypto.sign(sign_secret, envelope.cipher)
        return envelope

    async def dequeue_and_publish(
        self, account: Account, path: Optional[Sequence[int]] = None
    ) -> Optional[OutMessage]:
        """Run one broadcast round for ``account`` on its active group.

        Publishes one envelope to every topic on ``path`` (a fresh random path
        when not given). The oldest queued message whose recipient is a member
        of some node on the path is sealed; otherwise cover traffic is.

        Returns:
            The message marked as sent, or ``None`` for a cover-only round or
            when the account has no active group.
        """
        ctx = self._ctx
        if account.active_group_id is None:
            return None
        group = await ctx.store.get_group(account.active_group_id)
        if group is None:
            logger.debug("Active group of %s no longer exists", account.account_name)
            return None
        own = await ctx.store.get_certificate(account.cert_id)
        if own is None or own.sign.sec is None:
            raise InvalidKeyError(f"No signing key for account: {account.account_name}")

        path = list(path) if path is not None else random_path()
        if not is_valid_path(path):
            raise ValueError(f"Not a group tree path: {path}")

        queued = await ctx.store.find_enqueued_out_messages(group.id)
        selected, recipient = await self._select(group, path, queued)

        envelope = await asyncio.to_thread(
            self._seal,
            account.account_name,
            own.sign.sec,
            selected.message if selected else None,
            recipient,
        )
        data = envelope.serialize()
        for index in path:
            await ctx.transport.publish(message_topic(group.name, index), data)
        logger.debug("Published round for %s on %s along %s", account.account_name, group.name, path)

        if selected is None:
            return None
        now = utcnow()
        if not await ctx.store.transition_out_message(
            selected.id, MessageStatus.ENQUEUED, MessageStatus.SENT, now
        ):
            # Cancelled while the round was in flight; it went out anyway.
            logger.debug("Message %s changed status during publish", selected.id)
            return None
        await ctx.store.touch_conversation(selected.conversation_id, now)
        return await ctx.store.get_out_message(selected.id)

    # --- Inbound ---
    async def _is_local_topic(self, name: str, index: int) -> bool:
        groups = await self._ctx.store.find_groups(self._ctx.peer_id)
        return any(g.name == name and g.subgroup_index == index for g in groups)

    async def _verify(self, envelope: MessageEnvelope, peer_id: str, now: datetime) -> bool:
        if envelope.signature is None:
            return False
        sender = await self._ctx.store.find_valid_certificate(peer_id, envelope.from_account, now)
        if sender is None:
            return False
        try:
            await asyncio.to_thread(
                self._ctx.crypto.verify, sender.sign.pub, envelope.cipher, envelope.signature
            )
        except (InvalidSignatureError, InvalidKeyError):
            return False
        return True

    async def handle_message(self, message: PubSubMessage) -> Optional[InMessage]:
        """Inbound handler for message topics.

        Returns:
            The stored message, or ``None`` if the envelope was malformed or not for us.

        Raises:
            TopicFormatError: If the topic does not follow the message topic grammar.
            UnknownGroupError: If no local group lives on this topic.
        """
        ctx = self._ctx
        try:
            envelope = parse_message_envelope(message.data, ctx.config.supported_versions)
        except EnvelopeDecodeError as e:
            logger.debug("Could not decode message: %s", e)
            return None

        now = utcnow()
        owned = await ctx.store.find_owned_certificates(ctx.peer_id, now)
        opened = await asyncio.to_thread(unpack, ctx.crypto, envelope, owned, now)
        if opened is None:
            return None
        recipient = opened.certificate

        name, index = parse_message_topic(message.topic)
        group = await ctx.store.find_group(recipient.peer_id, recipient.account_name, name)
        if group is None or group.subgroup_index != index:
            if await self._is_local_topic(name, index):
                # The same round also reached the recipient's own topic
                logger.debug("Message on %s belongs to another local subgroup", message.topic)
                return None
            raise UnknownGroupError(f"Could not find a subscribed group: {message.topic}")
        account = await ctx.store.get_account(recipient.peer_id, recipient.account_name)
        if account is None:
            raise UnknownGroupError(f"No local account owns group: {message.topic}")

        verified = await self._verify(envelope, message.from_peer, now)
        conversation = await ctx.store.get_or_create_conversation(
            group, account.id, message.from_peer, envelope.from_account
        )
        stored = await ctx.store.insert_in_message(
            InMessage(
                conversation_id=conversation.id,
                index=await ctx.store.reserve_conversation_index(conversation.id),
                message=opened.message,
                verified=verified,
                date_received=now,
            )
        )
        await ctx.store.touch_conversation(conversation.id, utcnow())
        logger.debug("Saved received message to conversation %s at index: %d", conversation.id, stored.index)
        return stored
