#!/usr/bin/env python3
"""
Unit tests for the Message Router.

Covers broadcast/direct/group fan-out, persistence-before-delivery, read receipts,
typing indicators, history paging and ordering, and failure isolation.
"""

import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from chatrelay.errors import (
    DirectoryUnavailable,
    InvalidRequest,
    NotSubscribed,
    StoreUnavailable,
    UnknownRecipient,
)
from chatrelay.groups import GroupMembershipManager
from chatrelay.models import Addressing, Message
from chatrelay.registry import ConnectionRegistry
from chatrelay.router import MessageRouter
from chatrelay.stores import InMemoryGroupDirectory, InMemoryMessageStore, InMemoryUserDirectory
from tests.helpers import FakeConnection


class RouterTestCase(unittest.IsolatedAsyncioTestCase):
    """Registry with alice (two tabs), bob and carol online; dave known but offline."""

    async def asyncSetUp(self):
        self.registry = ConnectionRegistry()
        self.store = InMemoryMessageStore()
        self.directory = InMemoryUserDirectory(["alice", "bob", "carol", "dave"])
        self.groups = GroupMembershipManager(InMemoryGroupDirectory())
        self.router = MessageRouter(self.registry, self.groups, self.store, self.directory)

        self.alice1 = FakeConnection("alice")
        self.alice2 = FakeConnection("alice")
        self.bob = FakeConnection("bob")
        self.carol = FakeConnection("carol")
        for conn in (self.alice1, self.alice2, self.bob, self.carol):
            await self.registry.register(conn.identity, conn)

    @property
    def everyone(self):
        return [self.alice1, self.alice2, self.bob, self.carol]


class TestBroadcast(RouterTestCase):

    async def test_delivered_to_every_live_connection(self):
        message = await self.router.send_broadcast("alice", "hello all")

        for conn in self.everyone:
            self.assertEqual(
                conn.received("ReceiveMessage"),
                [("alice", "hello all", message.timestamp_utc, message.id, None, None, None, None)],
            )

    async def test_fan_out_cardinality_matches_live_connections(self):
        extra = FakeConnection("dave")
        await self.registry.register("dave", extra)

        await self.router.send_broadcast("bob", "count me")

        received = sum(len(conn.received("ReceiveMessage")) for conn in self.everyone + [extra])
        self.assertEqual(received, len(self.registry.all_connections()))

    async def test_attachment_fields_are_relayed(self):
        attachment = {"url": "/uploads/cat.png", "name": "cat.png", "type": "image", "sizeBytes": 2048}
        message = await self.router.send_broadcast("alice", "", attachment)

        args = self.bob.received("ReceiveMessage")[0]
        self.assertEqual(args[4:], ("/uploads/cat.png", "cat.png", "image", 2048))
        self.assertEqual(message.attachment.size_bytes, 2048)

    async def test_empty_message_rejected(self):
        with self.assertRaises(InvalidRequest):
            await self.router.send_broadcast("alice", "   ")

        self.assertEqual(self.store.list_recent(Addressing.broadcast(), 10), [])

    async def test_persisted_before_fan_out(self):
        seen_before_append = []
        original_append = self.store.append

        def append(message):
            seen_before_append.append(any(conn.received("ReceiveMessage") for conn in self.everyone))
            return original_append(message)

        self.store.append = append
        await self.router.send_broadcast("alice", "durable first")

        self.assertEqual(seen_before_append, [False])
        self.assertTrue(self.bob.received("ReceiveMessage"))

    async def test_store_failure_surfaces_and_delivers_nothing(self):
        self.store.append = Mock(side_effect=RuntimeError("database is down"))

        with self.assertRaises(StoreUnavailable):
            await self.router.send_broadcast("alice", "lost")

        for conn in self.everyone:
            self.assertEqual(conn.events, [])


class TestDirect(RouterTestCase):

    async def test_round_trip_with_echo(self):
        message = await self.router.send_direct("alice", "bob", "hi")

        expected = ("alice", "bob", "hi", message.timestamp_utc, message.id, None, None, None, None, False)
        self.assertEqual(self.bob.received("ReceivePrivateMessage"), [expected])
        self.assertEqual(self.alice1.received("ReceivePrivateMessage"), [expected])
        self.assertEqual(self.alice2.received("ReceivePrivateMessage"), [expected])
        self.assertEqual(self.carol.received("ReceivePrivateMessage"), [])

    async def test_mark_read_then_list_reports_read(self):
        message = await self.router.send_direct("alice", "bob", "hi")

        self.assertTrue(await self.router.mark_read(message.id, "alice", reader="bob"))

        stored = self.store.list_recent(Addressing.direct("alice"), 10, participant="bob")
        self.assertTrue(stored[0].is_read)
        self.assertIsNotNone(stored[0].read_at_utc)
        self.assertEqual(self.alice1.received("MessageRead"), [(message.id,)])
        self.assertEqual(self.alice2.received("MessageRead"), [(message.id,)])

    async def test_mark_read_is_idempotent(self):
        message = await self.router.send_direct("alice", "bob", "hi")
        await self.router.mark_read(message.id, "alice", reader="bob")
        first_read_at = self.store.get(message.id).read_at_utc

        self.assertFalse(await self.router.mark_read(message.id, "alice", reader="bob"))

        self.assertEqual(self.store.get(message.id).read_at_utc, first_read_at)
        self.assertEqual(len(self.alice1.received("MessageRead")), 1)

    async def test_mark_read_unknown_id_is_silent(self):
        self.assertFalse(await self.router.mark_read(999, "alice", reader="bob"))
        self.assertEqual(self.alice1.received("MessageRead"), [])

    async def test_mark_read_only_by_recipient(self):
        message = await self.router.send_direct("alice", "bob", "hi")

        self.assertFalse(await self.router.mark_read(message.id, "alice", reader="carol"))
        self.assertFalse(self.store.get(message.id).is_read)

    async def test_mark_read_ignores_broadcast_messages(self):
        message = await self.router.send_broadcast("alice", "public")
        self.assertFalse(await self.router.mark_read(message.id, "alice"))

    async def test_unknown_recipient_not_persisted(self):
        with self.assertRaises(UnknownRecipient):
            await self.router.send_direct("alice", "ghost", "anyone there?")

        self.assertEqual(self.store.list_recent(Addressing.direct("ghost"), 10, participant="alice"), [])
        self.assertEqual(self.alice1.received("ReceivePrivateMessage"), [])

    async def test_offline_recipient_still_persisted(self):
        message = await self.router.send_direct("alice", "dave", "see you later")

        stored = self.store.get(message.id)
        self.assertEqual(stored.to_identity, "dave")
        self.assertFalse(stored.is_read)
        self.assertEqual(len(self.alice1.received("ReceivePrivateMessage")), 1)

    async def test_nobody_online_persists_without_fan_out(self):
        await self.registry.unregister("alice", self.alice1)
        await self.registry.unregister("alice", self.alice2)

        message = await self.router.send_direct("alice", "dave", "note to self")

        self.assertIsNotNone(self.store.get(message.id))

    async def test_directory_failure_surfaces(self):
        self.directory.resolve = Mock(side_effect=ConnectionError("directory down"))

        with self.assertRaises(DirectoryUnavailable):
            await self.router.send_direct("alice", "bob", "hi")

        self.assertEqual(self.bob.events, [])

    async def test_same_sender_order_preserved(self):
        texts = [f"msg {i}" for i in range(20)]
        await asyncio.gather(*(self.router.send_direct("alice", "bob", text) for text in texts))

        received = self.bob.received("ReceivePrivateMessage")
        self.assertEqual([args[2] for args in received], texts)
        ids = [args[4] for args in received]
        self.assertEqual(ids, sorted(ids))

    async def test_recipient_name_is_case_insensitive(self):
        message = await self.router.send_direct("alice", "BOB", "hi")

        self.assertEqual(message.to_identity, "bob")
        self.assertEqual(self.bob.received("ReceivePrivateMessage")[0][:3], ("alice", "bob", "hi"))
        self.assertTrue(await self.router.mark_read(message.id, "alice", reader="bob"))

    async def test_sender_locks_are_released_after_sends(self):
        await asyncio.gather(*(self.router.send_direct("alice", "bob", f"m{i}") for i in range(5)))
        await self.router.send_broadcast("carol", "hello")
        with self.assertRaises(UnknownRecipient):
            await self.router.send_direct("bob", "ghost", "lost")

        self.assertEqual(self.router._sender_locks, {})


class TestGroupSend(RouterTestCase):

    async def test_requires_subscription(self):
        with self.assertRaises(NotSubscribed):
            await self.router.send_group(self.alice1, "team", "hello?")

    async def test_delivered_to_subscribed_connections_only(self):
        await self.groups.join(self.alice1, "team")
        await self.groups.join(self.bob, "team")

        message = await self.router.send_group(self.alice1, "team", "standup")

        expected = ("alice", "team", "standup", message.timestamp_utc, message.id, None, None, None, None)
        self.assertEqual(self.alice1.received("ReceiveGroupMessage"), [expected])
        self.assertEqual(self.bob.received("ReceiveGroupMessage"), [expected])
        # alice's second tab never joined.
        self.assertEqual(self.alice2.received("ReceiveGroupMessage"), [])
        self.assertEqual(self.carol.received("ReceiveGroupMessage"), [])
        self.assertEqual(self.store.get(message.id).group_name, "team")


class TestTyping(RouterTestCase):

    async def test_typing_to_user(self):
        await self.router.typing_to_user("alice", "bob")

        self.assertEqual(self.bob.received("UserTyping"), [("alice", "bob")])
        self.assertEqual(self.alice1.events, [])

    async def test_typing_to_offline_user_is_dropped(self):
        self.assertEqual(await self.router.typing_to_user("alice", "dave"), 0)

    async def test_typing_to_group(self):
        await self.groups.join(self.bob, "team")
        self.bob.clear()

        await self.router.typing_to_group("alice", "team")

        self.assertEqual(self.bob.received("GroupTyping"), [("alice", "team")])
        self.assertEqual(self.carol.events, [])


class TestHistory(RouterTestCase):

    def _message(self, minutes, text, message_id):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return Message(
            id=message_id,
            from_identity="alice",
            addressing=Addressing.broadcast(),
            text=text,
            timestamp_utc=base + timedelta(minutes=minutes),
        )

    async def test_reordered_ascending_regardless_of_store_order(self):
        newest_first = [self._message(m, f"t{m}", m) for m in (3, 2, 1)]
        self.store.list_recent = Mock(return_value=newest_first)

        history = await self.router.history("bob", Addressing.broadcast())

        self.assertEqual([m.text for m in history], ["t1", "t2", "t3"])
        self.store.list_recent.assert_called_once_with(Addressing.broadcast(), 100, None)

    async def test_page_is_most_recent_n(self):
        for i in range(105):
            self.store.append(self._message(i, f"t{i}", None))

        history = await self.router.history("bob", Addressing.broadcast())

        self.assertEqual(len(history), 100)
        self.assertEqual(history[0].text, "t5")
        self.assertEqual(history[-1].text, "t104")

    async def test_custom_limit(self):
        for i in range(10):
            self.store.append(self._message(i, f"t{i}", None))

        history = await self.router.history("bob", Addressing.broadcast(), limit=3)

        self.assertEqual([m.text for m in history], ["t7", "t8", "t9"])

    async def test_direct_history_is_the_two_way_conversation(self):
        await self.router.send_direct("alice", "bob", "hi bob")
        await self.router.send_direct("bob", "alice", "hi alice")
        await self.router.send_direct("alice", "carol", "not for bob")

        history = await self.router.history("bob", Addressing.direct("alice"))

        self.assertEqual([m.text for m in history], ["hi bob", "hi alice"])

    async def test_opening_direct_history_marks_unread_as_read(self):
        message = await self.router.send_direct("alice", "bob", "read me")

        await self.router.history("bob", Addressing.direct("alice"))

        self.assertTrue(self.store.get(message.id).is_read)
        self.assertEqual(self.alice1.received("MessageRead"), [(message.id,)])

    async def test_group_history_only_that_group(self):
        await self.groups.join(self.alice1, "team")
        await self.groups.join(self.alice1, "other")
        await self.router.send_group(self.alice1, "team", "in team")
        await self.router.send_group(self.alice1, "other", "elsewhere")

        history = await self.router.history("alice", Addressing.group("team"))

        self.assertEqual([m.text for m in history], ["in team"])

    async def test_store_failure_surfaces(self):
        self.store.list_recent = Mock(side_effect=OSError("timeout"))

        with self.assertRaises(StoreUnavailable):
            await self.router.history("bob", Addressing.broadcast())


if __name__ == "__main__":
    unittest.main()
