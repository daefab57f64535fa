import unittest

from chat_sync.constants import EVENT_USER_OFFLINE, EVENT_USER_ONLINE
from gateway.hub import RoomHub
from gateway.presence import FixedWindowRateLimiter, OnlineRegistry


class RoomHubTests(unittest.TestCase):
    def setUp(self):
        self.hub = RoomHub()
        self.received = {"a": [], "b": []}

    def join(self, connection_id: str, conversation_id: str) -> bool:
        return self.hub.join(connection_id, conversation_id, self.received[connection_id].append)

    def test_join_is_idempotent(self):
        self.assertTrue(self.join("a", "c1"))
        self.assertFalse(self.join("a", "c1"))

        self.assertEqual(self.hub.members("c1"), ["a"])

    def test_broadcast_reaches_members_except_excluded(self):
        self.join("a", "c1")
        self.join("b", "c1")

        delivered = self.hub.broadcast("c1", {"t": "x"}, exclude="a")

        self.assertEqual(delivered, 1)
        self.assertEqual(self.received["a"], [])
        self.assertEqual(self.received["b"], [{"t": "x"}])
        self.assertEqual(self.hub.broadcast("c9", {"t": "x"}), 0)

    def test_leave_all_returns_rooms_and_cleans_up(self):
        self.join("a", "c2")
        self.join("a", "c1")
        self.join("b", "c1")

        self.assertEqual(self.hub.leave_all("a"), ["c1", "c2"])
        self.assertEqual(self.hub.rooms_of("a"), set())
        self.assertEqual(self.hub.members("c1"), ["b"])
        self.assertEqual(self.hub.members("c2"), [])
        self.assertFalse(self.hub.leave("a", "c1"))


class OnlineRegistryTests(unittest.TestCase):
    def setUp(self):
        self.registry = OnlineRegistry()
        self.frames = {"conn-a": [], "conn-b1": [], "conn-b2": []}
        for connection_id, frames in self.frames.items():
            self.registry.register_callback(connection_id, frames.append)

    def test_first_connection_announces_to_others(self):
        self.assertTrue(self.registry.connect("alice", "Alice", "conn-a"))

        self.assertEqual(self.frames["conn-a"], [])
        self.assertEqual([f["t"] for f in self.frames["conn-b1"]], [EVENT_USER_ONLINE])
        self.assertEqual(self.frames["conn-b1"][0]["body"], {"user_id": "alice", "username": "Alice"})

    def test_user_stays_online_until_last_connection_closes(self):
        self.registry.connect("bob", "Bob", "conn-b1")
        self.assertFalse(self.registry.connect("bob", "Bob", "conn-b2"))

        self.assertFalse(self.registry.disconnect("bob", "conn-b1"))
        self.assertTrue(self.registry.is_online("bob"))
        self.assertTrue(self.registry.disconnect("bob", "conn-b2"))

        self.assertFalse(self.registry.is_online("bob"))
        self.assertEqual([f["t"] for f in self.frames["conn-a"]], [EVENT_USER_ONLINE, EVENT_USER_OFFLINE])
        self.assertFalse(self.registry.disconnect("bob", "conn-b2"))

    def test_online_users_are_sorted(self):
        self.registry.connect("carol", "Carol", "conn-b1")
        self.registry.connect("alice", "Alice", "conn-a")

        self.assertEqual(self.registry.online_users(), ["alice", "carol"])
        self.assertEqual(self.registry.name_of("carol"), "Carol")
        self.assertEqual(self.registry.name_of("dave"), "dave")


class FixedWindowRateLimiterTests(unittest.TestCase):
    def test_window_resets_after_expiry(self):
        limiter = FixedWindowRateLimiter(2, window_ms=1_000)

        self.assertTrue(limiter.allow("alice", 0))
        self.assertTrue(limiter.allow("alice", 10))
        self.assertFalse(limiter.allow("alice", 20))
        self.assertTrue(limiter.allow("bob", 20))
        self.assertTrue(limiter.allow("alice", 1_000))


if __name__ == "__main__":
    unittest.main()
