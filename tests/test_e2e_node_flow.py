import unittest
from unittest import mock

from distort import DistortNode, InMemoryBroker, InMemoryStore, NodeConfig
from distort.exceptions import AccountError, DistortError, MessageTooLongError, NotFoundError, TransportError
from distort.models import ROOT_ACCOUNT, CertificateStatus, InMessage, MessageStatus, OutMessage

from tests.helpers import FlakyTransport, make_certificate, start_node

PATH_WITH_3 = [0, 1, 3, 7, 15, 31]
PATH_WITHOUT_3 = [0, 2, 5, 11, 23, 47]


async def join_at(node, group, index, account=ROOT_ACCOUNT, level=0):
    with mock.patch("distort.api.accounts.random_from_level", return_value=index):
        return await node.accounts.join_group(account, group, level)


class TestNewsGroupFlow(unittest.IsolatedAsyncioTestCase):
    """Alice at news:1 writes to Bob at news:3."""

    async def asyncSetUp(self):
        self.broker = InMemoryBroker()
        self.alice = await start_node(self.broker, "alice")
        self.bob = await start_node(self.broker, "bob")
        await join_at(self.alice, "news", 1, level=1)
        await join_at(self.bob, "news", 3, level=2)
        await self.alice.scheduler.run_certificate_cycle()
        await self.bob.scheduler.run_certificate_cycle()
        await self.broker.drain()

    async def asyncTearDown(self):
        await self.alice.shutdown()
        await self.bob.shutdown()

    async def _alice_round(self, path):
        with mock.patch("distort.protocol.messages.random_path", return_value=list(path)):
            sent = await self.alice.scheduler.run_message_cycle()
        await self.broker.drain()
        return sent[ROOT_ACCOUNT]

    async def test_topics_and_certificates(self):
        self.assertEqual(self.broker.subscribers("news-1"), ["alice"])
        self.assertEqual(self.broker.subscribers("news-3"), ["bob"])
        self.assertEqual(sorted(self.broker.subscribers("news-certs")), ["alice", "bob"])

        bob_cert = await self.bob.accounts.get_certificate()
        self.assertEqual(bob_cert.groups, ["news:3"])
        known = await self.alice.context.store.find_valid_certificate("bob", ROOT_ACCOUNT)
        self.assertEqual(known.encrypt.pub, bob_cert.encrypt.pub)
        self.assertEqual(known.groups, ["news:3"])
        self.assertFalse(known.is_owned)

    async def test_message_waits_for_a_path_through_the_recipient(self):
        out = await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "hi bob", to_peer_id="bob")
        self.assertEqual(out.status, MessageStatus.ENQUEUED)

        self.assertIsNone(await self._alice_round(PATH_WITHOUT_3))
        self.assertEqual(await self.bob.accounts.list_conversations(), [])
        self.assertEqual((await self.alice.context.store.get_out_message(out.id)).status, MessageStatus.ENQUEUED)

        sent = await self._alice_round(PATH_WITH_3)
        self.assertEqual(sent.id, out.id)
        self.assertEqual(sent.status, MessageStatus.SENT)

        [received] = await self.bob.accounts.read_conversation(ROOT_ACCOUNT, "news", "alice")
        self.assertIsInstance(received, InMessage)
        self.assertEqual(received.message, "hi bob")
        self.assertEqual(received.index, 0)
        self.assertTrue(received.verified)
        self.assertEqual(self.broker.errors, [])

    async def test_reply_continues_the_conversation(self):
        await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "ping", to_peer_id="bob")
        await self._alice_round(PATH_WITH_3)
        await self.bob.accounts.enqueue_message(ROOT_ACCOUNT, "news", "pong", to_peer_id="alice")
        # bob's path must run through alice's subgroup 1
        with mock.patch("distort.protocol.messages.random_path", return_value=PATH_WITH_3):
            await self.bob.scheduler.run_message_cycle()
        await self.broker.drain()

        bob_view = await self.bob.accounts.read_conversation(ROOT_ACCOUNT, "news", "alice")
        self.assertEqual([(type(e), e.index, e.message) for e in bob_view],
                         [(InMessage, 0, "ping"), (OutMessage, 1, "pong")])
        alice_view = await self.alice.accounts.read_conversation(ROOT_ACCOUNT, "news", "bob")
        self.assertEqual([(type(e), e.index, e.message) for e in alice_view],
                         [(OutMessage, 0, "ping"), (InMessage, 1, "pong")])
        self.assertEqual(await self.alice.accounts.read_conversation(ROOT_ACCOUNT, "news", "bob", start=1),
                         alice_view[1:])

    async def test_cancelled_message_is_never_sent(self):
        out = await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "oops", to_peer_id="bob")
        self.assertTrue(await self.alice.accounts.cancel_message(out.id))
        self.assertFalse(await self.alice.accounts.cancel_message(out.id))
        self.assertIsNone(await self._alice_round(PATH_WITH_3))
        self.assertEqual(await self.bob.accounts.list_conversations(), [])
        with self.assertRaises(NotFoundError):
            await self.alice.accounts.cancel_message("missing")

    async def test_enqueue_by_nickname(self):
        peer = await self.alice.accounts.add_peer(ROOT_ACCOUNT, "bob", nickname="b")
        self.assertIsNotNone(peer.cert_id)
        self.assertEqual([p.nickname for p in await self.alice.accounts.list_peers()], ["b"])
        out = await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "hey", to_nickname="b")
        self.assertEqual(out.to_cert_id, peer.cert_id)
        with self.assertRaises(NotFoundError):
            await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "hey", to_nickname="nobody")

    async def test_adding_a_stored_peer_updates_it(self):
        first = await self.alice.accounts.add_peer(ROOT_ACCOUNT, "bob", nickname="b")
        again = await self.alice.accounts.add_peer(ROOT_ACCOUNT, "bob", nickname="bobby")
        self.assertEqual(again.id, first.id)
        [peer] = await self.alice.accounts.list_peers()
        self.assertEqual((peer.nickname, peer.cert_id), ("bobby", first.cert_id))

        with self.assertRaises(NotFoundError):
            await self.alice.accounts.add_peer(ROOT_ACCOUNT, "carol", nickname="c")
        with self.assertRaises(NotFoundError):
            await self.alice.accounts.add_peer(ROOT_ACCOUNT, "bob", remote_account="work")
        self.assertEqual(len(await self.alice.accounts.list_peers()), 1)

    async def test_remove_peer(self):
        await self.alice.accounts.add_peer(ROOT_ACCOUNT, "bob", nickname="b")
        await self.alice.accounts.remove_peer(ROOT_ACCOUNT, "bob")
        self.assertEqual(await self.alice.accounts.list_peers(), [])
        with self.assertRaises(NotFoundError):
            await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "hey", to_nickname="b")
        with self.assertRaises(NotFoundError):
            await self.alice.accounts.remove_peer(ROOT_ACCOUNT, "bob")

    async def test_reading_is_capped_and_marks_the_conversation(self):
        for text in ("one", "two", "three"):
            await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", text, to_peer_id="bob")
        [conversation] = await self.alice.accounts.list_conversations()
        self.assertEqual((conversation.height, conversation.unread), (3, 3))

        self.alice.context.config.max_read = 2
        latest = await self.alice.accounts.read_conversation(ROOT_ACCOUNT, "news", "bob")
        self.assertEqual([e.message for e in latest], ["two", "three"])
        earlier = await self.alice.accounts.read_conversation(ROOT_ACCOUNT, "news", "bob", start=0, end=1)
        self.assertEqual([e.message for e in earlier], ["one"])

        [conversation] = await self.alice.accounts.list_conversations()
        self.assertEqual((conversation.last_read_index, conversation.unread), (2, 0))
        [group] = await self.alice.accounts.list_groups()
        self.assertEqual(group.height, 3)

    async def test_message_for_another_local_account_on_a_shared_path(self):
        """Bob's root sits at news:3 and his second account at news:1; both are on the path."""
        await self.bob.accounts.create_account("side")
        await join_at(self.bob, "news", 1, account="side", level=1)
        await self.bob.scheduler.run_certificate_cycle()
        await self.broker.drain()

        await self.alice.accounts.enqueue_message(
            ROOT_ACCOUNT, "news", "for side", to_peer_id="bob", to_account="side"
        )
        await self._alice_round(PATH_WITH_3)

        self.assertEqual(self.broker.errors, [])
        [received] = await self.bob.accounts.read_conversation("side", "news", "alice")
        self.assertEqual(received.message, "for side")
        self.assertEqual(await self.bob.accounts.list_conversations(), [])

    async def test_enqueue_rejections(self):
        with self.assertRaises(MessageTooLongError):
            await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "x" * 2000, to_peer_id="bob")
        with self.assertRaises(NotFoundError):
            await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "hi", to_peer_id="carol")
        with self.assertRaises(NotFoundError):
            await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "sports", "hi", to_peer_id="bob")
        with self.assertRaises(ValueError):
            await self.alice.accounts.enqueue_message(ROOT_ACCOUNT, "news", "hi")
        self.assertEqual(await self.alice.accounts.list_conversations(), [])

    async def test_sign_and_verify_text(self):
        signature = await self.alice.sign_text("alice on the forum")
        alice_cert = await self.alice.accounts.get_certificate()
        self.assertTrue(await self.bob.verify_text(alice_cert.sign.pub, "alice on the forum", signature))
        self.assertFalse(await self.bob.verify_text(alice_cert.sign.pub, "someone else", signature))


class TestAccountsAndGroups(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.broker = InMemoryBroker()
        self.node = await start_node(self.broker, "peer-a")

    async def asyncTearDown(self):
        await self.node.shutdown()

    async def test_root_account_bootstrapped_once(self):
        [root] = await self.node.accounts.list_accounts()
        self.assertEqual(root.account_name, ROOT_ACCOUNT)
        cert = await self.node.accounts.get_certificate()
        self.assertTrue(cert.is_owned)
        self.assertEqual(cert.peer_id, "peer-a")

        store = self.node.context.store
        await join_at(self.node, "news", 3, level=2)
        await self.node.shutdown()
        self.assertEqual(self.broker.subscribers("news-3"), [])

        restarted = DistortNode(self.broker.transport("peer-a"), store, NodeConfig(), run_scheduler=False)
        async with restarted:
            self.assertEqual(len(await restarted.accounts.list_accounts()), 1)
            self.assertEqual(self.broker.subscribers("news-3"), ["peer-a"])
            self.assertEqual(self.broker.subscribers("news-certs"), ["peer-a"])

    async def test_not_started(self):
        node = DistortNode(self.broker.transport("peer-z"), InMemoryStore())
        with self.assertRaises(DistortError):
            node.accounts
        with self.assertRaises(DistortError):
            node.peer_id

    async def test_account_management(self):
        alice = await self.node.accounts.create_account("alice")
        self.assertTrue(alice.enabled)
        with self.assertRaises(AccountError):
            await self.node.accounts.create_account("alice")
        with self.assertRaises(AccountError):
            await self.node.accounts.create_account("")
        with self.assertRaises(AccountError):
            await self.node.accounts.set_account_enabled(ROOT_ACCOUNT, False)
        with self.assertRaises(NotFoundError):
            await self.node.accounts.get_account("nobody")
        names = sorted(a.account_name for a in await self.node.accounts.list_accounts())
        self.assertEqual(names, ["alice", ROOT_ACCOUNT])

    async def test_disabling_releases_only_unshared_topics(self):
        await self.node.accounts.create_account("alice")
        await join_at(self.node, "news", 3, level=2)
        await join_at(self.node, "news", 3, account="alice", level=2)
        await join_at(self.node, "sports", 0, account="alice")
        subs = self.node.subscriptions
        self.assertEqual(subs.refcount("news-3"), 2)

        await self.node.accounts.set_account_enabled("alice", False)
        self.assertEqual(subs.refcount("news-3"), 1)
        self.assertEqual(self.broker.subscribers("news-3"), ["peer-a"])
        self.assertEqual(self.broker.subscribers("sports-all"), [])
        self.assertEqual(self.broker.subscribers("sports-certs"), [])
        self.assertEqual(await self.node.scheduler.run_message_cycle(), {ROOT_ACCOUNT: None})

        await self.node.accounts.set_account_enabled("alice", True)
        self.assertEqual(self.broker.subscribers("sports-all"), ["peer-a"])
        self.assertEqual(subs.refcount("news-3"), 2)

    async def test_join_move_and_leave(self):
        first = await join_at(self.node, "news", 3, level=2)
        account = await self.node.accounts.get_account()
        self.assertEqual(account.active_group_id, first.id)

        moved = await join_at(self.node, "news", 4, level=2)
        self.assertEqual(moved.id, first.id)
        self.assertEqual(moved.subgroup_index, 4)
        self.assertEqual(self.broker.subscribers("news-3"), [])
        self.assertEqual(self.broker.subscribers("news-4"), ["peer-a"])

        await join_at(self.node, "sports", 0)
        cert = await self.node.accounts.get_certificate()
        self.assertEqual(cert.groups, ["news:4", "sports:0"])
        # the first group stays active
        self.assertEqual((await self.node.accounts.get_account()).active_group_id, first.id)

        await self.node.accounts.leave_group(ROOT_ACCOUNT, "news")
        self.assertEqual(self.broker.subscribers("news-4"), [])
        self.assertEqual(self.broker.subscribers("news-certs"), [])
        self.assertEqual([g.name for g in await self.node.accounts.list_groups()], ["sports"])
        self.assertIsNone((await self.node.accounts.get_account()).active_group_id)
        self.assertEqual((await self.node.accounts.get_certificate()).groups, ["sports:0"])

        account = await self.node.accounts.set_active_group(ROOT_ACCOUNT, "sports")
        self.assertIsNotNone(account.active_group_id)
        with self.assertRaises(NotFoundError):
            await self.node.accounts.leave_group(ROOT_ACCOUNT, "news")

    async def test_join_rejects_bad_levels(self):
        with self.assertRaises(ValueError):
            await self.node.accounts.join_group(ROOT_ACCOUNT, "news", 6)
        with self.assertRaises(ValueError):
            await self.node.accounts.join_group(ROOT_ACCOUNT, "news", -1)
        self.assertEqual(await self.node.accounts.list_groups(), [])

    async def test_delete_account(self):
        store = self.node.context.store
        await store.insert_certificate(make_certificate(self.node.context.crypto, "peer-b", owned=False))
        await self.node.accounts.create_account("alice")
        cert = await self.node.accounts.get_certificate("alice")
        await join_at(self.node, "news", 3, level=2)
        await join_at(self.node, "news", 3, account="alice", level=2)
        await join_at(self.node, "sports", 0, account="alice")
        await self.node.accounts.add_peer("alice", "peer-b", nickname="b")
        out = await self.node.accounts.enqueue_message("alice", "sports", "bye", to_peer_id="peer-b")

        await self.node.accounts.delete_account("alice")
        self.assertEqual([a.account_name for a in await self.node.accounts.list_accounts()], [ROOT_ACCOUNT])
        with self.assertRaises(NotFoundError):
            await self.node.accounts.get_account("alice")
        self.assertEqual((await store.get_certificate(cert.id)).status, CertificateStatus.INVALIDATED)
        self.assertIsNone(await store.find_valid_certificate("peer-a", "alice"))
        self.assertIsNone(await store.get_out_message(out.id))
        self.assertEqual(await store.find_groups("peer-a", "alice"), [])

        self.assertEqual(self.node.subscriptions.refcount("news-3"), 1)
        self.assertEqual(self.broker.subscribers("news-3"), ["peer-a"])
        self.assertEqual(self.broker.subscribers("sports-all"), [])
        self.assertEqual(self.broker.subscribers("sports-certs"), [])

        with self.assertRaises(AccountError):
            await self.node.accounts.delete_account(ROOT_ACCOUNT)
        with self.assertRaises(NotFoundError):
            await self.node.accounts.delete_account("alice")
        recreated = await self.node.accounts.create_account("alice")
        self.assertNotEqual(recreated.cert_id, cert.id)


class TestTransportFailures(unittest.IsolatedAsyncioTestCase):
    """Unsubscribe calls that keep failing leave subscriptions as they were."""

    async def asyncSetUp(self):
        self.broker = InMemoryBroker()
        self.transport = FlakyTransport(self.broker, "peer-a")
        node = DistortNode(self.transport, InMemoryStore(), NodeConfig(transport_retries=1), run_scheduler=False)
        self.node = await node.start()

    async def asyncTearDown(self):
        await self.node.shutdown()

    async def test_failed_disable_can_be_retried(self):
        await self.node.accounts.create_account("x")
        await join_at(self.node, "news", 3, level=2)
        await join_at(self.node, "news", 3, account="x", level=2)
        await join_at(self.node, "sports", 3, account="x", level=2)
        subs = self.node.subscriptions

        self.transport.fail_unsubscribe["sports-3"] = 1
        with self.assertRaises(TransportError):
            await self.node.accounts.set_account_enabled("x", False)
        self.assertTrue((await self.node.accounts.get_account("x")).enabled)
        self.assertEqual((subs.refcount("news-3"), subs.refcount("news-certs")), (2, 2))
        self.assertEqual((subs.refcount("sports-3"), subs.refcount("sports-certs")), (1, 1))

        await self.node.accounts.set_account_enabled("x", False)
        self.assertEqual(subs.refcount("news-3"), 1)
        self.assertEqual(self.broker.subscribers("news-3"), ["peer-a"])
        self.assertEqual(self.broker.subscribers("sports-3"), [])

    async def test_failed_move_keeps_the_old_subgroup(self):
        await join_at(self.node, "news", 3, level=2)
        self.transport.fail_unsubscribe["news-3"] = 1
        with self.assertRaises(TransportError):
            await join_at(self.node, "news", 4, level=2)

        [group] = await self.node.accounts.list_groups()
        self.assertEqual(group.subgroup_index, 3)
        self.assertEqual(self.broker.subscribers("news-3"), ["peer-a"])
        self.assertEqual(self.broker.subscribers("news-4"), [])
        self.assertEqual(self.node.subscriptions.refcount("news-certs"), 1)
        self.assertEqual((await self.node.accounts.get_certificate()).groups, ["news:3"])

    async def test_failed_delete_keeps_the_account(self):
        await self.node.accounts.create_account("x")
        await join_at(self.node, "news", 2, account="x", level=1)
        self.transport.fail_unsubscribe["news-2"] = 1
        with self.assertRaises(TransportError):
            await self.node.accounts.delete_account("x")
        cert = await self.node.accounts.get_certificate("x")
        self.assertEqual(cert.status, CertificateStatus.VALID)
        self.assertEqual(self.broker.subscribers("news-2"), ["peer-a"])


if __name__ == "__main__":
    unittest.main()
