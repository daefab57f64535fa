import asyncio
import unittest

from chat_sync.dispatcher import Dispatcher


class DispatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.dispatcher = Dispatcher()

    async def asyncTearDown(self) -> None:
        await self.dispatcher.stop()

    async def test_jobs_run_in_submission_order(self) -> None:
        seen = []
        for index in range(5):
            self.dispatcher.submit(seen.append, index)
        result = await self.dispatcher.call(lambda: list(seen))

        self.assertEqual(result, [0, 1, 2, 3, 4])
        self.assertTrue(self.dispatcher.running)

    async def test_post_propagates_exceptions(self) -> None:
        def boom() -> None:
            raise ValueError("nope")

        with self.assertRaises(ValueError):
            await self.dispatcher.post(boom)
        self.assertEqual(await self.dispatcher.call(lambda: "still alive"), "still alive")

    async def test_failing_submit_does_not_stop_worker(self) -> None:
        def boom() -> None:
            raise RuntimeError("handler bug")

        seen = []
        with self.assertLogs("chat_sync.dispatcher", level="ERROR"):
            self.dispatcher.submit(boom)
            self.dispatcher.submit(seen.append, "after")
            await self.dispatcher.drain()

        self.assertEqual(seen, ["after"])

    async def test_jobs_from_concurrent_tasks_never_interleave(self) -> None:
        log = []

        def step(name: str) -> None:
            log.append(("start", name))
            log.append(("end", name))

        async def producer(name: str) -> None:
            for _ in range(3):
                self.dispatcher.submit(step, name)
                await asyncio.sleep(0)

        await asyncio.gather(producer("a"), producer("b"))
        await self.dispatcher.drain()

        self.assertEqual(len(log), 12)
        for index in range(0, len(log), 2):
            self.assertEqual(log[index][0], "start")
            self.assertEqual(log[index + 1], ("end", log[index][1]))

    async def test_stop_finishes_queued_work_first(self) -> None:
        seen = []
        self.dispatcher.submit(seen.append, 1)
        await self.dispatcher.stop()

        self.assertEqual(seen, [1])
        self.assertFalse(self.dispatcher.running)


if __name__ == "__main__":
    unittest.main()
