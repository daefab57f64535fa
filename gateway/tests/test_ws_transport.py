import asyncio
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from chat_sync.constants import (
    EVENT_AUTHENTICATE,
    EVENT_AUTHENTICATED,
    EVENT_AUTHENTICATION_ERROR,
    EVENT_ERROR,
    EVENT_JOIN_CHAT,
    EVENT_LEAVE_CHAT,
    EVENT_MARK_MESSAGE_READ,
    EVENT_MESSAGE_READ,
    EVENT_NEW_MESSAGE,
    EVENT_PING,
    EVENT_PONG,
    EVENT_SEND_MESSAGE,
    EVENT_TYPING_START,
    EVENT_TYPING_STOP,
    EVENT_USER_OFFLINE,
    EVENT_USER_ONLINE,
    EVENT_USER_STOPPED_TYPING,
    EVENT_USER_TYPING,
)
from chat_sync.conversations import ConversationStore, GroupSettings
from chat_sync.models import UserIdentity
from gateway.presence import PresenceConfig
from gateway.ws_transport import RUNTIME_KEY, create_app

from ws_receive_util import assert_no_event, frame, recv_event

TOKENS = {
    "t_alice": UserIdentity("u_alice", "Alice"),
    "t_bob": UserIdentity("u_bob", "Bob"),
    "t_carol": UserIdentity("u_carol", "Carol"),
}


class WsTransportTests(unittest.IsolatedAsyncioTestCase):
    presence_config = PresenceConfig()

    async def asyncSetUp(self):
        self.conversations = ConversationStore()
        self.direct = self.conversations.find_or_create_direct("u_alice", "u_bob")
        self.app = create_app(
            tokens=TOKENS,
            conversations=self.conversations,
            presence_config=self.presence_config,
            ping_interval_s=3600,
        )
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    @property
    def runtime(self):
        return self.app[RUNTIME_KEY]

    async def _connect(self, credential: str):
        ws = await self.client.ws_connect("/ws")
        await ws.send_json(frame(EVENT_AUTHENTICATE, {"credential": credential}, request_id="auth"))
        reply = await ws.receive_json()
        return ws, reply

    async def _join(self, ws, conversation_id: str, *, expected_members: int) -> None:
        await ws.send_json(frame(EVENT_JOIN_CHAT, {"conversation_id": conversation_id}))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2
        while len(self.runtime.hub.members(conversation_id)) < expected_members:
            if loop.time() > deadline:
                self.fail("join was not processed")
            await asyncio.sleep(0.01)

    async def _pair(self):
        alice, _ = await self._connect("t_alice")
        bob, _ = await self._connect("t_bob")
        cid = self.direct.conversation_id
        await self._join(alice, cid, expected_members=1)
        await self._join(bob, cid, expected_members=2)
        return alice, bob, cid


class AuthenticationTests(WsTransportTests):
    async def test_authenticate_returns_identity(self):
        ws, reply = await self._connect("t_alice")
        await ws.close()

        self.assertEqual(reply["t"], EVENT_AUTHENTICATED)
        self.assertEqual(reply["id"], "auth")
        self.assertEqual(reply["body"], {"user_id": "u_alice", "username": "Alice"})

    async def test_unknown_credential_is_rejected_and_closed(self):
        ws, reply = await self._connect("t_nobody")

        self.assertEqual(reply["t"], EVENT_AUTHENTICATION_ERROR)
        self.assertEqual(reply["body"]["message"], "invalid credential")
        closing = await ws.receive()
        self.assertIn(closing.type, (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED))
        await ws.close()

    async def test_first_frame_must_authenticate(self):
        ws = await self.client.ws_connect("/ws")
        await ws.send_json(frame(EVENT_JOIN_CHAT, {"conversation_id": self.direct.conversation_id}))

        reply = await ws.receive_json()
        await ws.close()

        self.assertEqual(reply["t"], EVENT_ERROR)
        self.assertEqual(reply["body"]["code"], "invalid_request")

    async def test_ping_is_answered(self):
        ws, _ = await self._connect("t_alice")
        await ws.send_json(frame(EVENT_PING, request_id="p1"))

        pong = await recv_event(ws, EVENT_PONG)
        await ws.close()

        self.assertEqual(pong["id"], "p1")


class MessagingTests(WsTransportTests):
    async def test_send_is_broadcast_to_room(self):
        alice, bob, cid = await self._pair()

        await alice.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": " hi ", "nonce": "n1"}))

        to_alice = await recv_event(alice, EVENT_NEW_MESSAGE)
        to_bob = await recv_event(bob, EVENT_NEW_MESSAGE)
        await alice.close()
        await bob.close()

        self.assertEqual(to_alice["body"], to_bob["body"])
        message = to_bob["body"]["message"]
        self.assertEqual(message["content"], "hi")
        self.assertEqual(message["sender_id"], "u_alice")
        self.assertEqual(message["nonce"], "n1")
        self.assertIsInstance(message["timestamp"], int)
        self.assertEqual(self.conversations.get(cid).last_message_id, message["id"])

    async def test_repeated_nonce_is_stored_once_and_confirmed_to_sender_only(self):
        alice, bob, cid = await self._pair()
        send = frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "once", "nonce": "n1"})

        await alice.send_json(send)
        first = await recv_event(alice, EVENT_NEW_MESSAGE)
        await recv_event(bob, EVENT_NEW_MESSAGE)
        await alice.send_json(send)
        second = await recv_event(alice, EVENT_NEW_MESSAGE)

        await assert_no_event(bob, EVENT_NEW_MESSAGE, timeout=0.2)
        await alice.close()
        await bob.close()

        self.assertEqual(first["body"]["message"]["id"], second["body"]["message"]["id"])
        self.assertEqual(self.runtime.messages.count(cid), 1)

    async def test_sender_outside_room_still_gets_confirmation(self):
        alice, _ = await self._connect("t_alice")
        cid = self.direct.conversation_id

        await alice.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "hello", "nonce": "n1"}))
        confirmation = await recv_event(alice, EVENT_NEW_MESSAGE)
        await alice.close()

        self.assertEqual(confirmation["body"]["message"]["nonce"], "n1")

    async def test_non_member_cannot_join_or_send(self):
        carol, _ = await self._connect("t_carol")
        cid = self.direct.conversation_id

        await carol.send_json(frame(EVENT_JOIN_CHAT, {"conversation_id": cid}, request_id="j1"))
        join_error = await recv_event(carol, EVENT_ERROR)
        await carol.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "x", "nonce": "n9"}))
        send_error = await recv_event(carol, EVENT_ERROR)
        await carol.close()

        self.assertEqual(join_error["id"], "j1")
        self.assertEqual(join_error["body"]["code"], "forbidden")
        self.assertEqual(send_error["body"]["nonce"], "n9")
        self.assertEqual(send_error["body"]["conversation_id"], cid)
        self.assertEqual(self.runtime.hub.members(cid), [])
        self.assertEqual(self.runtime.messages.count(cid), 0)

    async def test_unknown_conversation_reports_not_found(self):
        alice, _ = await self._connect("t_alice")

        await alice.send_json(frame(EVENT_JOIN_CHAT, {"conversation_id": "missing"}))
        error = await recv_event(alice, EVENT_ERROR)
        await alice.close()

        self.assertEqual(error["body"]["code"], "not_found")
        self.assertEqual(error["body"]["conversation_id"], "missing")

    async def test_empty_content_is_rejected(self):
        alice, _ = await self._connect("t_alice")
        cid = self.direct.conversation_id

        await alice.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "   ", "nonce": "n1"}))
        error = await recv_event(alice, EVENT_ERROR)
        await alice.close()

        self.assertEqual(error["body"]["code"], "invalid_request")
        self.assertEqual(error["body"]["nonce"], "n1")

    async def test_admin_only_group_rejects_member_posts(self):
        group = self.conversations.create_group(
            "u_alice", ["u_bob"], name="News", settings=GroupSettings(only_admins_can_message=True)
        )
        bob, _ = await self._connect("t_bob")

        await bob.send_json(
            frame(EVENT_SEND_MESSAGE, {"conversation_id": group.conversation_id, "content": "hi", "nonce": "n1"})
        )
        error = await recv_event(bob, EVENT_ERROR)
        await bob.close()

        self.assertEqual(error["body"]["code"], "forbidden")

    async def test_left_room_stops_receiving(self):
        alice, bob, cid = await self._pair()
        await bob.send_json(frame(EVENT_LEAVE_CHAT, {"conversation_id": cid}))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2
        while len(self.runtime.hub.members(cid)) != 1:
            self.assertLess(loop.time(), deadline)
            await asyncio.sleep(0.01)

        await alice.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "alone", "nonce": "n1"}))
        await recv_event(alice, EVENT_NEW_MESSAGE)

        await assert_no_event(bob, EVENT_NEW_MESSAGE, timeout=0.2)
        await alice.close()
        await bob.close()


class ReceiptAndTypingTests(WsTransportTests):
    async def test_read_receipt_is_broadcast_once(self):
        alice, bob, cid = await self._pair()
        await alice.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "read me", "nonce": "n1"}))
        delivered = await recv_event(bob, EVENT_NEW_MESSAGE)
        message_id = delivered["body"]["message"]["id"]

        read = frame(EVENT_MARK_MESSAGE_READ, {"conversation_id": cid, "message_id": message_id})
        await bob.send_json(read)
        receipt = await recv_event(alice, EVENT_MESSAGE_READ)
        await bob.send_json(read)

        await assert_no_event(alice, EVENT_MESSAGE_READ, timeout=0.2)
        await alice.close()
        await bob.close()

        self.assertEqual(receipt["body"]["user_id"], "u_bob")
        self.assertEqual(receipt["body"]["message_id"], message_id)
        self.assertIsInstance(receipt["body"]["read_at"], int)
        self.assertEqual(self.conversations.get(cid).participant_state["u_bob"].last_read_message_id, message_id)

    async def test_typing_is_relayed_to_others_only(self):
        alice, bob, cid = await self._pair()

        await alice.send_json(frame(EVENT_TYPING_START, {"conversation_id": cid}))
        typing = await recv_event(bob, EVENT_USER_TYPING)
        await alice.send_json(frame(EVENT_TYPING_STOP, {"conversation_id": cid}))
        stopped = await recv_event(bob, EVENT_USER_STOPPED_TYPING)

        await assert_no_event(alice, EVENT_USER_TYPING, timeout=0.1)
        await alice.close()
        await bob.close()

        self.assertEqual(typing["body"], {"user_id": "u_alice", "username": "Alice", "conversation_id": cid})
        self.assertEqual(stopped["body"]["user_id"], "u_alice")

    async def test_disconnect_clears_typing_for_room(self):
        alice, bob, cid = await self._pair()
        await alice.send_json(frame(EVENT_TYPING_START, {"conversation_id": cid}))
        await recv_event(bob, EVENT_USER_TYPING)

        await alice.close()
        stopped = await recv_event(bob, EVENT_USER_STOPPED_TYPING)
        await bob.close()

        self.assertEqual(stopped["body"]["user_id"], "u_alice")


class RateLimitTests(WsTransportTests):
    presence_config = PresenceConfig(messages_per_min=1)

    async def test_messages_over_limit_are_rejected(self):
        alice, _ = await self._connect("t_alice")
        cid = self.direct.conversation_id

        await alice.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "one", "nonce": "n1"}))
        await recv_event(alice, EVENT_NEW_MESSAGE)
        await alice.send_json(frame(EVENT_SEND_MESSAGE, {"conversation_id": cid, "content": "two", "nonce": "n2"}))
        error = await recv_event(alice, EVENT_ERROR)
        await alice.close()

        self.assertEqual(error["body"]["code"], "rate_limited")
        self.assertEqual(error["body"]["nonce"], "n2")


class OnlinePresenceTests(WsTransportTests):
    async def test_online_and_offline_announcements(self):
        alice, _ = await self._connect("t_alice")
        bob, _ = await self._connect("t_bob")

        online = await recv_event(alice, EVENT_USER_ONLINE)
        already = await recv_event(bob, EVENT_USER_ONLINE)
        self.assertEqual(online["body"], {"user_id": "u_bob", "username": "Bob"})
        self.assertEqual(already["body"]["user_id"], "u_alice")

        await bob.close()
        offline = await recv_event(alice, EVENT_USER_OFFLINE)
        await alice.close()

        self.assertEqual(offline["body"]["user_id"], "u_bob")
        self.assertFalse(self.runtime.online.is_online("u_bob"))

    async def test_second_connection_does_not_announce_again(self):
        alice, _ = await self._connect("t_alice")
        first, _ = await self._connect("t_bob")
        await recv_event(alice, EVENT_USER_ONLINE)
        second, _ = await self._connect("t_bob")

        await assert_no_event(alice, EVENT_USER_ONLINE, timeout=0.2)
        await first.close()
        await assert_no_event(alice, EVENT_USER_OFFLINE, timeout=0.2)
        self.assertTrue(self.runtime.online.is_online("u_bob"))

        await second.close()
        await recv_event(alice, EVENT_USER_OFFLINE)
        await alice.close()


if __name__ == "__main__":
    unittest.main()
