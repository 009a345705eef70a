"""Certificate announcements: publishing our identities and importing remote ones."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from .envelopes import CertificateEnvelope, parse_certificate_envelope, to_millis
from .topics import certificate_topic, format_peer_string
from ..context import NodeContext
from ..exceptions import EnvelopeDecodeError, InvalidKeyError, InvalidSignatureError
from ..models import Account, Certificate, KeyPair, SocialMedia, utcnow
from ..transport.base import PubSubMessage

logger = logging.getLogger(__name__)


class CertificateProtocol:
    """Builds outgoing certificate announcements and imports incoming ones.

    This is the only component that changes the status of a certificate.
    """

    def __init__(self, ctx: NodeContext):
        self._ctx = ctx

    @property
    def renewal_window(self) -> timedelta:
        return timedelta(seconds=self._ctx.config.certificate_lifetime_seconds)

    def build_announcement(self, cert: Certificate, account_name: str) -> CertificateEnvelope:
        """Announcement for one of our certificates, signed over our peer string."""
        if cert.sign.sec is None:
            raise InvalidKeyError("Cannot announce a certificate without its signing secret")
        ctx = self._ctx
        signature = ctx.crypto.sign(cert.sign.sec, format_peer_string(ctx.peer_id, account_name))
        return CertificateEnvelope(
            v=ctx.config.protocol_version,
            from_account=account_name,
            encrypt_pub=cert.encrypt.pub,
            sign_pub=cert.sign.pub,
            expiration=to_millis(cert.last_expiration),
            groups=list(cert.groups),
            signature=signature,
            social_media=[(s.platform, s.handle) for s in cert.social_media],
        )

    async def publish_certificate(self, account: Account, now: Optional[datetime] = None) -> bool:
        """Renew the account's certificate and announce it on the active group.

        Returns:
            True if an announcement was published, False when the account has no active group.
        """
        ctx = self._ctx
        now = now or utcnow()
        cert = await ctx.store.update_certificate(
            account.cert_id, last_expiration=now + self.renewal_window
        )
        if account.active_group_id is None:
            return False
        group = await ctx.store.get_group(account.active_group_id)
        if group is None:
            logger.debug("Active group of %s no longer exists", account.account_name)
            return False

        envelope = await asyncio.to_thread(self.build_announcement, cert, account.account_name)
        await ctx.transport.publish(certificate_topic(group.name), envelope.serialize())
        logger.debug("Published certificate of %s to: %s", account.account_name, group.name)
        return True

    async def revoke_certificates(self, account_name: str) -> int:
        """Invalidate every valid certificate of one of our accounts."""
        revoked = await self._ctx.store.invalidate_certificates(self._ctx.peer_id, account_name)
        logger.debug("Invalidated %d certificate(s) of account: %s", revoked, account_name)
        return revoked

    async def handle_certificate(self, message: PubSubMessage) -> Optional[Certificate]:
        """Inbound handler for ``<name>-certs`` topics.

        Returns:
            The imported or refreshed certificate, or ``None`` if the announcement
            was dropped or is one of our own.
        """
        ctx = self._ctx
        try:
            envelope = parse_certificate_envelope(message.data, ctx.config.supported_versions)
        except EnvelopeDecodeError as e:
            logger.debug("Could not decode certificate: %s", e)
            return None

        identity = format_peer_string(message.from_peer, envelope.from_account)
        try:
            await asyncio.to_thread(ctx.crypto.verify, envelope.sign_pub, identity, envelope.signature)
        except (InvalidSignatureError, InvalidKeyError) as e:
            logger.debug("Failed to verify signature on certificate of %s: %s", identity, e)
            return None

        social = [SocialMedia(platform=p, handle=h) for p, h in envelope.social_media]
        existing = await ctx.store.find_matching_certificate(
            message.from_peer, envelope.from_account, envelope.encrypt_pub, envelope.sign_pub
        )
        if existing is not None:
            if existing.is_owned:
                logger.debug("This node owns certificate of %s, no action needed", identity)
                return None
            updated = await ctx.store.update_certificate(
                existing.id,
                last_expiration=envelope.expiration_datetime,
                groups=envelope.groups,
                social_media=social,
            )
            logger.debug("Updated key for peer: %s", identity)
            return updated

        cert = Certificate(
            peer_id=message.from_peer,
            account_name=envelope.from_account,
            encrypt=KeyPair(pub=envelope.encrypt_pub),
            sign=KeyPair(pub=envelope.sign_pub),
            last_expiration=envelope.expiration_datetime,
            groups=list(envelope.groups),
            social_media=social,
        )
        invalidated = await ctx.store.replace_valid_certificate(cert)
        if invalidated:
            logger.debug("Invalidated %d certificate(s) for: %s", invalidated, identity)
        logger.info("Imported new key for peer: %s", identity)

        repointed = await ctx.store.repoint_peers(message.from_peer, envelope.from_account, cert.id)
        logger.debug("Updated %d cert reference(s) for peer: %s", repointed, identity)
        return cert
