import io
import unittest
from unittest import mock

from aiohttp.test_utils import TestServer

from chat_sync import cli
from chat_sync.config import SyncConfig
from chat_sync.connection import ConnectionManager
from chat_sync.conversations import ConversationStore
from gateway.ws_transport import create_app

from chat_test_util import ALICE, BOB, TOKENS


class CliArgumentTests(unittest.TestCase):
    def test_missing_identity_is_a_usage_error(self):
        with mock.patch.dict("os.environ", {}, clear=True), mock.patch("chat_sync.cli.load_config", return_value=SyncConfig()):
            with mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
                self.assertEqual(cli.main(["list"]), 2)

        self.assertIn("--user-id", stderr.getvalue())

    def test_send_arguments(self):
        args = cli.build_parser().parse_args(
            ["--user-id", "u_alice", "--credential", "t_alice", "send", "c1", "hello there", "--timeout", "2"]
        )

        self.assertEqual(args.command, "send")
        self.assertEqual(args.conversation_id, "c1")
        self.assertEqual(args.content, "hello there")
        self.assertEqual(args.timeout, 2.0)


class CliSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conversations = ConversationStore()
        self.direct = self.conversations.find_or_create_direct(ALICE.user_id, BOB.user_id)
        self.server = TestServer(create_app(tokens=TOKENS, conversations=self.conversations, ping_interval_s=3600))
        await self.server.start_server()
        self.config = SyncConfig(base_url=str(self.server.make_url("")), connect_timeout_s=2.0)

    async def asyncTearDown(self):
        await self.server.close()

    def parse(self, *argv: str):
        return cli.build_parser().parse_args(["--user-id", ALICE.user_id, "--name", "Alice", "--credential", "t_alice", *argv])

    async def test_list_prints_conversations(self):
        output = io.StringIO()

        exit_code = await cli._run(self.parse("list"), self.config, output)

        self.assertEqual(exit_code, 0)
        self.assertIn(self.direct.conversation_id, output.getvalue())
        self.assertIn(BOB.user_id, output.getvalue())

    async def test_send_waits_for_confirmation(self):
        output = io.StringIO()

        exit_code = await cli._run(self.parse("send", self.direct.conversation_id, "hi bob"), self.config, output)

        self.assertEqual(exit_code, 0)
        self.assertEqual(output.getvalue().strip(), "Alice: hi bob")

    async def test_undelivered_send_reports_send_failure(self):
        output = io.StringIO()

        with mock.patch.object(ConnectionManager, "send", return_value=False):
            exit_code = await cli._run(self.parse("send", self.direct.conversation_id, "hi bob"), self.config, output)

        lines = output.getvalue().splitlines()
        self.assertEqual(exit_code, 1)
        self.assertEqual(lines[0], "Alice: hi bob (failed)")
        self.assertTrue(lines[1].startswith("error: message tmp_"))
        self.assertTrue(lines[1].endswith("not delivered: gateway unreachable"))

    async def test_send_to_unknown_conversation_reports_error(self):
        output = io.StringIO()

        exit_code = await cli._run(self.parse("send", "missing", "hi"), self.config, output)

        self.assertEqual(exit_code, 1)
        self.assertTrue(output.getvalue().startswith("error:"))

    async def test_bad_credential_reports_error(self):
        output = io.StringIO()
        args = cli.build_parser().parse_args(["--user-id", "u_x", "--credential", "nope", "list"])

        exit_code = await cli._run(args, self.config, output)

        self.assertEqual(exit_code, 1)
        self.assertIn("error:", output.getvalue())


if __name__ == "__main__":
    unittest.main()
