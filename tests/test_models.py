import unittest

from dmsync.models import Change, Conversation, Message, Profile, canonical_pair


class TestCanonicalPair(unittest.TestCase):
    def test_order_independent(self):
        self.assertEqual(canonical_pair("bob", "alice"), ("alice", "bob"))
        self.assertEqual(canonical_pair("alice", "bob"), ("alice", "bob"))


class TestProfile(unittest.TestCase):
    def test_display_name_prefers_username(self):
        profile = Profile(id="u1", username="ally", email="alice@example.com")
        self.assertEqual(profile.display_name, "ally")

    def test_display_name_falls_back_to_email_handle(self):
        self.assertEqual(Profile(id="u1", email="alice@example.com").display_name, "alice")

    def test_display_name_falls_back_to_id(self):
        self.assertEqual(Profile(id="u1").display_name, "u1")

    def test_from_row_coerces_status(self):
        profile = Profile.from_row({"id": "u1", "online_status": 1, "last_seen_ms": 5})
        self.assertIs(profile.online_status, True)
        self.assertEqual(profile.last_seen_ms, 5)


class TestConversation(unittest.TestCase):
    def test_other_participant(self):
        conversation = Conversation(id="c1", participant1_id="a", participant2_id="b", created_at_ms=1)
        self.assertEqual(conversation.other("a"), "b")
        self.assertEqual(conversation.other("b"), "a")
        self.assertEqual(conversation.pair, ("a", "b"))
        with self.assertRaises(ValueError):
            conversation.other("c")


class TestMessage(unittest.TestCase):
    def test_sender_name_is_not_part_of_identity(self):
        plain = Message(id="m1", conversation_id="c1", sender_id="a", content="hi", created_at_ms=1)
        named = Message(
            id="m1", conversation_id="c1", sender_id="a", content="hi", created_at_ms=1, sender_name="alice"
        )
        self.assertEqual(plain, named)

    def test_sort_key_breaks_ties_by_id(self):
        first = Message(id="m1", conversation_id="c1", sender_id="a", content="x", created_at_ms=5)
        second = Message(id="m2", conversation_id="c1", sender_id="a", content="y", created_at_ms=5)
        self.assertLess(first.sort_key, second.sort_key)


class TestChange(unittest.TestCase):
    def test_row_uses_old_for_deletes(self):
        change = Change(table="profiles", op="DELETE", old={"id": "u1"})
        self.assertEqual(change.row, {"id": "u1"})
        self.assertEqual(Change.from_dict(change.to_dict()), change)
