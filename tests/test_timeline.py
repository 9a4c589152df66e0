import asyncio
import unittest

from dmsync.errors import TransportError, ValidationError
from dmsync.models import Message
from dmsync.resolver import ConversationResolver
from dmsync.timeline import MessageTimeline

from tests.helpers import FakeClock, seeded_substrate


def _message(message_id: str, ts: int, conversation_id: str = "c1", content: str = "x") -> Message:
    return Message(id=message_id, conversation_id=conversation_id, sender_id="alice", content=content, created_at_ms=ts)


class StubSubstrate:
    def __init__(self, snapshots=None) -> None:
        self.snapshots = snapshots or {}
        self.gates = {}
        self.calls = []

    async def list_messages(self, conversation_id):
        self.calls.append(("list_messages", conversation_id))
        gate = self.gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        return list(self.snapshots.get(conversation_id, []))

    async def insert_message(self, conversation_id, sender_id, content):
        self.calls.append(("insert_message", conversation_id))
        return Message(id="new", conversation_id=conversation_id, sender_id=sender_id, content=content, created_at_ms=1)


class TestMessageTimeline(unittest.IsolatedAsyncioTestCase):
    async def test_load_orders_by_timestamp_then_id(self):
        substrate = StubSubstrate({"c1": [_message("m3", 20), _message("m2", 10), _message("m1", 10)]})
        timeline = MessageTimeline(substrate)

        messages = await timeline.load("c1")

        self.assertEqual([m.id for m in messages], ["m1", "m2", "m3"])
        self.assertTrue(timeline.loaded)

    async def test_load_tolerates_empty_history(self):
        timeline = MessageTimeline(StubSubstrate())
        self.assertEqual(await timeline.load("c1"), [])
        self.assertEqual(len(timeline), 0)

    async def test_live_duplicate_of_loaded_row_is_skipped(self):
        substrate = StubSubstrate({"c1": [_message("m1", 10), _message("m2", 20)]})
        timeline = MessageTimeline(substrate)
        await timeline.load("c1")

        self.assertFalse(timeline.on_live_message(_message("m2", 20)))
        self.assertTrue(timeline.on_live_message(_message("m3", 30)))
        self.assertFalse(timeline.on_live_message(_message("m3", 30)))

        self.assertEqual([m.id for m in timeline.messages], ["m1", "m2", "m3"])

    async def test_live_row_arriving_before_snapshot_is_merged_once(self):
        substrate = StubSubstrate({"c1": [_message("m1", 10), _message("m2", 20)]})
        substrate.gates["c1"] = asyncio.Event()
        timeline = MessageTimeline(substrate)
        timeline.open("c1")

        load_task = asyncio.create_task(timeline.load("c1"))
        await asyncio.sleep(0)
        timeline.on_live_message(_message("m2", 20))
        timeline.on_live_message(_message("m3", 30))
        substrate.gates["c1"].set()
        messages = await load_task

        ids = [m.id for m in messages]
        self.assertEqual(ids, ["m1", "m2", "m3"])
        self.assertEqual(len(ids), len(set(ids)))

    async def test_sequence_stays_ordered_for_late_live_rows(self):
        timeline = MessageTimeline(StubSubstrate({"c1": [_message("m1", 10), _message("m4", 40)]}))
        await timeline.load("c1")

        timeline.on_live_message(_message("m2", 20))
        timeline.on_live_message(_message("m5", 50))
        timeline.on_live_message(_message("m0", 40))

        keys = [m.sort_key for m in timeline.messages]
        self.assertEqual(keys, sorted(keys))
        self.assertEqual([m.id for m in timeline.messages], ["m1", "m2", "m0", "m4", "m5"])

    async def test_live_rows_for_other_conversations_are_ignored(self):
        timeline = MessageTimeline(StubSubstrate())
        await timeline.load("c1")

        self.assertFalse(timeline.on_live_message(_message("m1", 10, conversation_id="c2")))
        self.assertEqual(timeline.messages, ())

    async def test_stale_load_is_discarded_after_switch(self):
        substrate = StubSubstrate({"a": [_message("a1", 10, "a")], "b": [_message("b1", 10, "b")]})
        substrate.gates["a"] = asyncio.Event()
        timeline = MessageTimeline(substrate)
        timeline.open("a")

        stale = asyncio.create_task(timeline.load("a"))
        await asyncio.sleep(0)
        timeline.open("b")
        fresh = await timeline.load("b")
        substrate.gates["a"].set()

        self.assertIsNone(await stale)
        self.assertEqual([m.id for m in fresh], ["b1"])
        self.assertEqual([m.id for m in timeline.messages], ["b1"])

    async def test_load_for_inactive_conversation_is_refused(self):
        timeline = MessageTimeline(StubSubstrate({"b": [_message("b1", 10, "b")]}))
        timeline.open("a")

        self.assertIsNone(await timeline.load("b"))
        self.assertEqual(timeline.conversation_id, "a")

    async def test_history_limit_keeps_most_recent(self):
        snapshot = [_message(f"m{i}", i) for i in range(5)]
        timeline = MessageTimeline(StubSubstrate({"c1": snapshot}), history_limit=2)

        messages = await timeline.load("c1")

        self.assertEqual([m.id for m in messages], ["m3", "m4"])
        self.assertNotIn("m0", timeline)

    async def test_name_lookup_annotates_history(self):
        async def lookup(sender_id):
            return sender_id.upper()

        timeline = MessageTimeline(StubSubstrate({"c1": [_message("m1", 10)]}), name_lookup=lookup)
        messages = await timeline.load("c1")

        self.assertEqual(messages[0].sender_name, "ALICE")

    async def test_append_rejects_blank_content_without_round_trip(self):
        substrate = StubSubstrate()
        timeline = MessageTimeline(substrate)

        for content in ("", "   ", "\n\t"):
            with self.assertRaises(ValidationError):
                await timeline.append("c1", "alice", content)
        self.assertEqual(substrate.calls, [])

    async def test_append_does_not_splice_and_clears_draft(self):
        substrate = await seeded_substrate("alice", "bob", clock=FakeClock())
        conversation_id = await ConversationResolver(substrate).resolve("alice", "bob")
        timeline = MessageTimeline(substrate)
        await timeline.load(conversation_id)
        timeline.draft = "  hi  "

        message = await timeline.append(conversation_id, "alice", timeline.draft)

        self.assertEqual(message.content, "hi")
        self.assertEqual(timeline.draft, "")
        self.assertEqual(timeline.messages, ())
        self.assertTrue(timeline.on_live_message(message))
        self.assertFalse(timeline.on_live_message(message))
        self.assertEqual([m.id for m in timeline.messages], [message.id])

    async def test_append_failure_keeps_draft(self):
        substrate = await seeded_substrate("alice", "bob")
        timeline = MessageTimeline(substrate)
        timeline.draft = "hello"

        with self.assertRaises(TransportError):
            await timeline.append("missing", "alice", timeline.draft)
        self.assertEqual(timeline.draft, "hello")
