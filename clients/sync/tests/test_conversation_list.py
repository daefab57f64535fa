import unittest

from chat_sync.conversation_list import ConversationList
from chat_sync.conversations import ConversationStore
from chat_sync.errors import InvalidConversationReference
from chat_sync.models import Message

from chat_test_util import FakeClock, sequential_ids


class ConversationListTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        store = ConversationStore(now_func=self.clock.now, id_factory=sequential_ids("c"))
        self.direct = store.find_or_create_direct("u_alice", "u_bob")
        self.clock.advance(1)
        self.group = store.create_group("u_alice", ["u_bob", "u_carol"], name="Weekend")
        self.conversations = ConversationList("u_alice")
        self.conversations.load([self.direct, self.group])
        self._ids = sequential_ids("m")

    def message(self, conversation_id: str, sender: str, content: str = "hi", offset_s: float = 5) -> Message:
        return Message(
            message_id=self._ids(),
            conversation_id=conversation_id,
            sender_id=sender,
            content=content,
            ts_ms=self.clock.now() + int(offset_s * 1000),
        )

    def ids(self):
        return [c.conversation_id for c in self.conversations.items()]

    def test_items_sorted_by_latest_activity(self) -> None:
        self.assertEqual(self.ids(), ["c2", "c1"])

        self.conversations.apply_message(self.message("c1", "u_bob"))

        self.assertEqual(self.ids(), ["c1", "c2"])
        self.assertEqual(self.conversations.preview("c1").content, "hi")

    def test_unread_counts_only_foreign_messages_outside_open_conversation(self) -> None:
        self.conversations.apply_message(self.message("c1", "u_bob"))
        self.conversations.apply_message(self.message("c1", "u_alice", offset_s=6))
        self.assertEqual(self.conversations.unread("c1"), 1)

        self.conversations.open("c2")
        self.conversations.apply_message(self.message("c2", "u_carol"))

        self.assertEqual(self.conversations.unread("c2"), 0)
        self.assertEqual(self.conversations.total_unread(), 1)

    def test_opening_resets_unread(self) -> None:
        self.conversations.apply_message(self.message("c1", "u_bob"))
        self.conversations.apply_message(self.message("c1", "u_bob", "again", offset_s=6))

        self.conversations.open("c1")

        self.assertEqual(self.conversations.unread("c1"), 0)
        self.assertEqual(self.conversations.current, "c1")
        self.assertEqual(self.conversations.close(), "c1")
        self.assertIsNone(self.conversations.current)

    def test_same_message_twice_counts_once(self) -> None:
        message = self.message("c1", "u_bob")

        self.assertTrue(self.conversations.apply_message(message))
        self.assertTrue(self.conversations.apply_message(message))

        self.assertEqual(self.conversations.unread("c1"), 1)

    def test_older_message_does_not_replace_preview(self) -> None:
        self.conversations.apply_message(self.message("c1", "u_bob", "newer", offset_s=10))
        self.conversations.apply_message(self.message("c1", "u_bob", "older", offset_s=2))

        self.assertEqual(self.conversations.preview("c1").content, "newer")

    def test_unknown_conversation_is_reported(self) -> None:
        self.assertFalse(self.conversations.apply_message(self.message("c9", "u_bob")))
        self.assertIsNone(self.conversations.participants_of("c9"))
        with self.assertRaises(InvalidConversationReference):
            self.conversations.open("c9")

    def test_reload_keeps_unread_for_listed_conversations(self) -> None:
        self.conversations.apply_message(self.message("c1", "u_bob"))
        self.conversations.apply_message(self.message("c2", "u_bob"))

        self.conversations.load([self.direct])

        self.assertEqual(self.conversations.unread("c1"), 1)
        self.assertEqual(self.conversations.unread("c2"), 0)
        self.assertNotIn("c2", self.conversations)
        self.assertEqual(len(self.conversations), 1)

    def test_search_matches_names_and_previews(self) -> None:
        self.conversations.remember_name("u_bob", "Bob Builder")
        self.conversations.apply_message(self.message("c2", "u_carol", "bring snacks"))

        self.assertEqual([c.conversation_id for c in self.conversations.search("builder")], ["c1"])
        self.assertEqual([c.conversation_id for c in self.conversations.search("SNACKS")], ["c2"])
        self.assertEqual([c.conversation_id for c in self.conversations.search("week")], ["c2"])
        self.assertEqual(len(self.conversations.search("  ")), 2)
        self.assertEqual(self.conversations.display_name("c1"), "Bob Builder")


if __name__ == "__main__":
    unittest.main()
