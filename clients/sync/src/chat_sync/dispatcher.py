"""Single event-processing path.

Inbound frames and local intents are posted here and run one at a time on a
single worker task, so state mutations never interleave. Posted callables are
plain functions and must not block; network I/O happens before posting.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    fn: Callable[..., Any]
    args: Tuple[Any, ...]
    future: Optional[asyncio.Future]


class Dispatcher:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[_Job]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run())

    def post(self, fn: Callable[..., Any], *args: Any) -> asyncio.Future:
        """Queue ``fn(*args)``; the returned future carries its result or exception."""

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.put_nowait(_Job(fn=fn, args=args, future=future))
        self.start()
        return future

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue ``fn(*args)`` without a result; failures are only logged."""

        self._queue.put_nowait(_Job(fn=fn, args=args, future=None))
        self.start()

    async def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await self.post(fn, *args)

    async def drain(self) -> None:
        """Wait until everything posted so far has run."""

        await self._queue.join()

    async def stop(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is None or worker.done():
            return
        self._queue.put_nowait(None)
        await asyncio.gather(worker, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                if job.future is not None and job.future.cancelled():
                    continue
                try:
                    result = job.fn(*job.args)
                except Exception as exc:
                    if job.future is None:
                        logger.exception("event handler %s failed", getattr(job.fn, "__name__", job.fn))
                    elif not job.future.done():
                        job.future.set_exception(exc)
                else:
                    if job.future is not None and not job.future.done():
                        job.future.set_result(result)
            finally:
                self._queue.task_done()
