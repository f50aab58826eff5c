# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

from common.logging_setup import log_context

logger = logging.getLogger("listener.queue")

Job = tuple[str, Callable[..., Awaitable[Any]], tuple]


class WorkspaceQueue:
    """
    FIFO of event jobs for one mirror guild, drained by a single worker.
    Jobs for the same guild run strictly in arrival order; separate guilds
    have separate queues and run concurrently.
    """

    def __init__(self, label: str):
        self.label = label
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"queue[{self.label}]")

    def submit(self, name: str, fn: Callable[..., Awaitable[Any]], *args) -> None:
        self._queue.put_nowait((name, fn, args))

    async def _run(self) -> None:
        while True:
            name, fn, args = await self._queue.get()
            try:
                with log_context(self.label):
                    await fn(*args)
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("[⛔] [%s] %s handler failed", self.label, name)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        t, self._worker = self._worker, None
        if t and not t.done():
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    def __len__(self) -> int:
        return self._queue.qsize()
