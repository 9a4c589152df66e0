import asyncio
import unittest

from dmsync.errors import ConstraintViolation, TransportError, UniqueViolation, ValidationError
from dmsync.resolver import ConversationResolver

from tests.helpers import seeded_substrate


class TestConversationResolver(unittest.IsolatedAsyncioTestCase):
    async def test_creates_once_then_reuses(self):
        substrate = await seeded_substrate("alice", "bob")
        resolver = ConversationResolver(substrate)

        first = await resolver.resolve("alice", "bob")
        second = await resolver.resolve("alice", "bob")
        reversed_order = await resolver.resolve("bob", "alice")

        self.assertEqual(first, second)
        self.assertEqual(first, reversed_order)
        self.assertEqual(substrate.conversation_count(), 1)

    async def test_concurrent_callers_converge_on_one_row(self):
        substrate = await seeded_substrate("alice", "bob")
        callers = [ConversationResolver(substrate) for _ in range(10)]

        results = await asyncio.gather(
            *(
                resolver.resolve("alice", "bob") if i % 2 == 0 else resolver.resolve("bob", "alice")
                for i, resolver in enumerate(callers)
            )
        )

        self.assertEqual(len(set(results)), 1)
        self.assertEqual(substrate.conversation_count(), 1)
        # Every caller saw no row on its first read, so the race really happened.
        self.assertEqual(substrate.calls.count("insert_conversation"), 10)

    async def test_distinct_pairs_get_distinct_conversations(self):
        substrate = await seeded_substrate("alice", "bob", "carol")
        resolver = ConversationResolver(substrate)

        ab = await resolver.resolve("alice", "bob")
        ac = await resolver.resolve("alice", "carol")
        bc = await resolver.resolve("carol", "bob")

        self.assertEqual(len({ab, ac, bc}), 3)

    async def test_rejects_self_conversation_without_round_trip(self):
        substrate = await seeded_substrate("alice")
        substrate.calls.clear()
        resolver = ConversationResolver(substrate)

        with self.assertRaises(ValidationError):
            await resolver.resolve("alice", "alice")
        with self.assertRaises(ValidationError):
            await resolver.resolve("alice", "")
        self.assertEqual(substrate.calls, [])

    async def test_unknown_user_surfaces_constraint_violation(self):
        substrate = await seeded_substrate("alice")
        resolver = ConversationResolver(substrate)

        with self.assertRaises(ConstraintViolation):
            await resolver.resolve("alice", "ghost")

    async def test_conflict_without_visible_winner_is_a_transport_error(self):
        class PhantomConflict:
            async def find_conversation(self, user_a, user_b):
                return None

            async def insert_conversation(self, participant1_id, participant2_id):
                raise UniqueViolation("duplicate")

        with self.assertRaises(TransportError):
            await ConversationResolver(PhantomConflict()).resolve("alice", "bob")
