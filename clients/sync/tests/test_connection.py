import asyncio
import unittest

from chat_sync.config import SyncConfig
from chat_sync.connection import ConnectionManager, ConnectionState
from chat_sync.constants import (
    EVENT_AUTHENTICATE,
    EVENT_AUTHENTICATED,
    EVENT_AUTHENTICATION_ERROR,
    EVENT_JOIN_CHAT,
    EVENT_LEAVE_CHAT,
    EVENT_NEW_MESSAGE,
    EVENT_PING,
    EVENT_PONG,
    EVENT_SEND_MESSAGE,
)
from chat_sync.errors import AuthenticationFailure, TransportDropped

from chat_test_util import TransportFactory, wait_until


def fast_config(**overrides) -> SyncConfig:
    values = dict(
        max_reconnect_attempts=3,
        reconnect_base_delay_s=0.01,
        reconnect_max_delay_s=0.05,
        heartbeat_interval_s=30.0,
        heartbeat_timeout_s=60.0,
        connect_timeout_s=1.0,
    )
    values.update(overrides)
    return SyncConfig(**values)


class ConnectionManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.factory = TransportFactory()
        self.statuses = []
        self.manager = self.make_manager(fast_config())

    async def asyncTearDown(self) -> None:
        await self.manager.logout()

    def make_manager(self, config: SyncConfig) -> ConnectionManager:
        manager = ConnectionManager("t_alice", config, transport_factory=self.factory)
        manager.on_status(self.statuses.append)
        return manager

    async def connect(self, index: int = 0) -> None:
        await wait_until(lambda: len(self.factory.transports) > index)
        transport = self.factory.transports[index]
        await wait_until(lambda: transport.sent_events(EVENT_AUTHENTICATE))
        transport.push(EVENT_AUTHENTICATED, {"user_id": "u_alice", "username": "Alice"})
        await self.manager.wait_for(ConnectionState.READY, timeout=1.0)

    async def test_authenticates_before_anything_else(self) -> None:
        self.manager.start()
        await wait_until(lambda: self.factory.transports and self.factory.latest.sent)

        transport = self.factory.latest
        self.assertEqual(transport.sent[0]["t"], EVENT_AUTHENTICATE)
        self.assertEqual(transport.sent[0]["body"], {"credential": "t_alice"})
        self.assertEqual(self.manager.state, ConnectionState.AUTHENTICATING)
        self.assertFalse(self.manager.send(EVENT_SEND_MESSAGE, {"conversation_id": "c1"}))

        await self.connect()
        self.assertTrue(self.manager.status.ready)
        self.assertEqual(
            [s.state for s in self.statuses],
            [ConnectionState.CONNECTING, ConnectionState.AUTHENTICATING, ConnectionState.READY],
        )

    async def test_send_queues_frames_once_ready(self) -> None:
        self.manager.start()
        await self.connect()

        self.assertTrue(self.manager.send(EVENT_SEND_MESSAGE, {"conversation_id": "c1", "content": "hi", "nonce": "n1"}))
        await wait_until(lambda: self.factory.latest.sent_events(EVENT_SEND_MESSAGE))

        frame = self.factory.latest.sent[-1]
        self.assertEqual(frame["v"], 1)
        self.assertEqual(frame["body"]["nonce"], "n1")

    async def test_subscriptions_are_idempotent_and_emit_join_leave(self) -> None:
        self.manager.start()
        await self.connect()

        self.assertTrue(self.manager.subscribe("c1"))
        self.assertFalse(self.manager.subscribe("c1"))
        self.assertTrue(self.manager.unsubscribe("c1"))
        self.assertFalse(self.manager.unsubscribe("c1"))

        transport = self.factory.latest
        await wait_until(lambda: transport.sent_events(EVENT_LEAVE_CHAT))
        self.assertEqual(transport.sent_events(EVENT_JOIN_CHAT), [{"conversation_id": "c1"}])
        self.assertEqual(self.manager.subscriptions, ())

        with self.assertRaises(ValueError):
            self.manager.subscribe("")

    async def test_rooms_are_rejoined_after_reconnect(self) -> None:
        self.manager.subscribe("c1")
        self.manager.subscribe("c2")
        self.manager.start()
        await self.connect()
        first = self.factory.latest
        await wait_until(lambda: len(first.sent_events(EVENT_JOIN_CHAT)) == 2)

        first.drop()
        await wait_until(lambda: len(self.factory.transports) == 2)
        degraded = [s for s in self.statuses if s.state is ConnectionState.DEGRADED]
        self.assertEqual(len(degraded), 1)
        self.assertIsInstance(degraded[0].last_error, TransportDropped)
        await self.connect(index=1)

        second = self.factory.latest
        await wait_until(lambda: len(second.sent_events(EVENT_JOIN_CHAT)) == 2)
        self.assertEqual(second.sent[0]["t"], EVENT_AUTHENTICATE)
        self.assertEqual(
            [body["conversation_id"] for body in second.sent_events(EVENT_JOIN_CHAT)], ["c1", "c2"]
        )
        self.assertEqual(self.manager.status.attempts, 0)

    async def test_gives_up_after_attempt_budget_then_manual_retry(self) -> None:
        self.factory.failures = 10
        self.manager.start()

        await wait_until(lambda: self.manager.status.gave_up)

        self.assertEqual(self.factory.calls, 4)
        self.assertEqual(self.manager.state, ConnectionState.DEGRADED)
        self.assertEqual(self.manager.status.attempts, 3)

        self.factory.failures = 0
        self.manager.reconnect()
        await self.connect()
        self.assertFalse(self.manager.status.gave_up)

    async def test_authentication_error_is_terminal(self) -> None:
        self.manager.start()
        await wait_until(lambda: self.factory.transports and self.factory.latest.sent)

        self.factory.latest.push(EVENT_AUTHENTICATION_ERROR, {"message": "bad token"})
        await self.manager.wait_for(ConnectionState.DISCONNECTED, timeout=1.0)
        await asyncio.sleep(0.05)

        status = self.manager.status
        self.assertIsInstance(status.last_error, AuthenticationFailure)
        self.assertIn("bad token", str(status.last_error))
        self.assertEqual(self.factory.calls, 1)

    async def test_answers_gateway_ping(self) -> None:
        self.manager.start()
        await self.connect()

        self.factory.latest.push(EVENT_PING, request_id="p1")
        await wait_until(lambda: self.factory.latest.sent_events(EVENT_PONG))

        self.assertEqual(self.factory.latest.sent[-1].get("id"), "p1")

    async def test_silent_channel_is_dropped_by_heartbeat(self) -> None:
        await self.manager.logout()
        self.manager = self.make_manager(fast_config(heartbeat_interval_s=0.02, heartbeat_timeout_s=0.1))
        self.manager.start()
        await self.connect()

        await wait_until(lambda: self.factory.transports[0].sent_events(EVENT_PING))
        await wait_until(lambda: len(self.factory.transports) == 2, timeout=2.0)

        degraded = [s for s in self.statuses if s.state is ConnectionState.DEGRADED]
        self.assertIn("heartbeat timeout", str(degraded[-1].last_error))

    async def test_inbound_events_reach_handlers(self) -> None:
        received = []

        def broken(body) -> None:
            raise RuntimeError("handler bug")

        self.manager.on_event(EVENT_NEW_MESSAGE, broken)
        self.manager.on_event(EVENT_NEW_MESSAGE, received.append)
        self.manager.start()
        await self.connect()

        self.factory.latest.push(EVENT_NEW_MESSAGE, {"conversation_id": "c1"})
        await wait_until(lambda: received)

        self.assertEqual(received, [{"conversation_id": "c1"}])

    async def test_logout_clears_rooms_and_refuses_sends(self) -> None:
        self.manager.subscribe("c1")
        self.manager.start()
        await self.connect()

        await self.manager.logout()

        self.assertEqual(self.manager.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.manager.subscriptions, ())
        self.assertFalse(self.manager.send(EVENT_SEND_MESSAGE, {}))
        self.assertTrue(self.factory.latest.closed)


if __name__ == "__main__":
    unittest.main()
