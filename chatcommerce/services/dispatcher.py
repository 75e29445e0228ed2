from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from chatcommerce.models.schemas import InboundMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Awaitable[None]]


class InboundDispatcher:
    """Queue between the webhook and the conversation engine.

    A single worker drains the queue and starts one task per message; the
    engine's per-user lock keeps one user's messages in arrival order while
    different users proceed concurrently.
    """

    def __init__(self, handler: MessageHandler, maxsize: int = 0):
        self.handler = handler
        self.queue: "asyncio.Queue[InboundMessage]" = asyncio.Queue(maxsize)
        self._worker: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self):
        if self.running:
            return
        self._worker = asyncio.create_task(self._consume(), name="inbound-dispatcher")
        logger.info("Inbound dispatcher started")

    async def enqueue(self, message: InboundMessage):
        await self.queue.put(message)

    async def _consume(self):
        while True:
            message = await self.queue.get()
            task = asyncio.create_task(self._handle(message))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _handle(self, message: InboundMessage):
        try:
            await self.handler(message)
        except Exception:
            logger.exception(
                "Unhandled error for message from %s on %s: %r",
                message.from_address,
                message.channel_id,
                message.text,
            )
        finally:
            self.queue.task_done()

    async def join(self):
        """Wait until every queued message has been handled."""
        await self.queue.join()

    async def stop(self):
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Inbound dispatcher stopped")
