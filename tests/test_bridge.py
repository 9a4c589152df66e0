import asyncio
import unittest

from dmsync.bridge import LiveEventBridge
from dmsync.errors import SubscriptionError, TransportError
from dmsync.events import MessageInserted, ProfileChanged
from dmsync.models import Profile
from dmsync.resolver import ConversationResolver

from tests.helpers import seeded_substrate, settle


class TestLiveEventBridge(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.substrate = await seeded_substrate("alice", "bob", "carol")
        await self.substrate.upsert_profile(Profile(id="bob", username="bobby"))
        resolver = ConversationResolver(self.substrate)
        self.ab = await resolver.resolve("alice", "bob")
        self.ac = await resolver.resolve("alice", "carol")
        self.bridge = LiveEventBridge(self.substrate)

    async def asyncTearDown(self):
        await self.bridge.close()

    async def test_delivers_inserts_with_sender_name(self):
        received = []
        await self.bridge.subscribe_to_conversation(self.ab, received.append)

        await self.substrate.insert_message(self.ab, "bob", "hey")
        await self.substrate.insert_message(self.ab, "alice", "hi")
        await settle()

        self.assertTrue(all(isinstance(e, MessageInserted) for e in received))
        self.assertEqual([e.message.content for e in received], ["hey", "hi"])
        self.assertEqual([e.message.sender_name for e in received], ["bobby", "alice"])

    async def test_scoped_to_conversation(self):
        received = []
        await self.bridge.subscribe_to_conversation(self.ab, received.append)

        await self.substrate.insert_message(self.ac, "carol", "not for you")
        await settle()

        self.assertEqual(received, [])

    async def test_ordering_survives_slow_name_lookups(self):
        original_get_profile = self.substrate.get_profile
        delays = {"bob": 5, "alice": 0}

        async def slow_get_profile(user_id):
            for _ in range(delays.get(user_id, 0)):
                await asyncio.sleep(0)
            return await original_get_profile(user_id)

        self.substrate.get_profile = slow_get_profile
        received = []
        await self.bridge.subscribe_to_conversation(self.ab, received.append)

        for i in range(4):
            await self.substrate.insert_message(self.ab, "bob" if i % 2 == 0 else "alice", f"m{i}")
        await settle(60)

        self.assertEqual([e.message.content for e in received], ["m0", "m1", "m2", "m3"])

    async def test_failed_name_lookup_falls_back_to_sender_id(self):
        async def broken_get_profile(user_id):
            raise TransportError("offline")

        self.substrate.get_profile = broken_get_profile
        received = []
        await self.bridge.subscribe_to_conversation(self.ab, received.append)

        await self.substrate.insert_message(self.ab, "bob", "hey")
        await settle()

        self.assertEqual(received[0].message.sender_name, "bob")

    async def test_switching_conversation_tears_down_previous(self):
        received = []
        await self.bridge.subscribe_to_conversation(self.ab, received.append)
        await self.bridge.subscribe_to_conversation(self.ac, received.append)

        self.assertEqual(self.substrate.feed.subscriber_count("messages"), 1)
        self.assertEqual(self.bridge.conversation_subscription.conversation_id, self.ac)

        await self.substrate.insert_message(self.ab, "bob", "old conversation")
        await self.substrate.insert_message(self.ac, "carol", "new conversation")
        await settle()

        self.assertEqual([e.message.content for e in received], ["new conversation"])

    async def test_async_handler_and_handler_errors(self):
        received = []

        async def handler(event):
            if event.message.content == "boom":
                raise RuntimeError("handler exploded")
            received.append(event)

        await self.bridge.subscribe_to_conversation(self.ab, handler)
        await self.substrate.insert_message(self.ab, "bob", "boom")
        await self.substrate.insert_message(self.ab, "bob", "still alive")
        await settle()

        self.assertEqual([e.message.content for e in received], ["still alive"])

    async def test_profile_changes_are_unscoped(self):
        received = []
        await self.bridge.subscribe_to_profile_changes(received.append)

        await self.substrate.update_profile("carol", {"online_status": True})
        await self.substrate.update_profile("bob", {"online_status": True})
        await settle()

        self.assertTrue(all(isinstance(e, ProfileChanged) for e in received))
        self.assertEqual([e.profile.id for e in received], ["carol", "bob"])
        self.assertFalse(received[0].previous.online_status)

    async def test_unsubscribe_stops_delivery(self):
        received = []
        subscription = await self.bridge.subscribe_to_conversation(self.ab, received.append)
        await self.bridge.unsubscribe(subscription)

        await self.substrate.insert_message(self.ab, "bob", "hey")
        await settle()

        self.assertEqual(received, [])
        self.assertIsNone(self.bridge.conversation_subscription)
        self.assertEqual(self.bridge.active_count, 0)
        self.assertEqual(self.substrate.feed.subscriber_count(), 0)

    async def test_setup_failure_is_a_subscription_error(self):
        async def refuse(table, callback, *, row_filter=None, on_lost=None):
            raise TransportError("socket refused")

        self.substrate.subscribe = refuse

        with self.assertRaises(SubscriptionError):
            await self.bridge.subscribe_to_conversation(self.ab, lambda event: None)
        self.assertIsNone(self.bridge.conversation_subscription)

    async def test_lost_subscription_is_reported_after_queued_events(self):
        log = []

        async def on_lost(error):
            log.append(("lost", type(error)))

        subscription = await self.bridge.subscribe_to_conversation(
            self.ab, lambda event: log.append(("event", event.message.content)), on_lost=on_lost
        )
        await self.substrate.insert_message(self.ab, "bob", "before the drop")
        await asyncio.sleep(0)
        subscription.handle.on_lost(TransportError("socket dropped"))
        await settle()

        self.assertEqual(log, [("event", "before the drop"), ("lost", SubscriptionError)])
        self.assertTrue(subscription.closed)
        self.assertIsNone(self.bridge.conversation_subscription)
        self.assertEqual(self.bridge.active_count, 0)

    async def test_closing_the_substrate_ends_live_subscriptions(self):
        losses = []
        await self.bridge.subscribe_to_profile_changes(lambda event: None, on_lost=losses.append)

        await self.substrate.close()
        await settle()

        self.assertEqual(len(losses), 1)
        self.assertIsInstance(losses[0], SubscriptionError)

    async def test_unsubscribed_handle_is_not_reported_lost(self):
        losses = []
        subscription = await self.bridge.subscribe_to_conversation(self.ab, lambda event: None, on_lost=losses.append)
        await self.bridge.unsubscribe(subscription)

        subscription.handle.on_lost(TransportError("late"))
        await settle()

        self.assertEqual(losses, [])
