from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

InactivityCallback = Callable[[str, str], Awaitable[None]]


class InactivitySupervisor:
    """Owns one idle timer task per user address.

    The task sleeps `warning_timeout`, calls `on_warning`, sleeps
    `termination_timeout` and calls `on_expire`. Touching a user cancels the
    running task and starts a fresh one, so at most one is alive per user.
    Timers are process-local and simply disappear on restart.
    """

    def __init__(
        self,
        warning_timeout: float,
        termination_timeout: float,
        on_warning: InactivityCallback,
        on_expire: InactivityCallback,
    ):
        self.warning_timeout = warning_timeout
        self.termination_timeout = termination_timeout
        self.on_warning = on_warning
        self.on_expire = on_expire
        self._tasks: Dict[str, asyncio.Task] = {}

    def touch(self, user_address: str, channel_id: str):
        self.cancel(user_address)
        self._tasks[user_address] = asyncio.create_task(
            self._run(user_address, channel_id), name=f"inactivity:{user_address}"
        )

    def cancel(self, user_address: str):
        task = self._tasks.get(user_address)
        if task is None:
            return
        # on_expire may reset the session from inside the timer itself
        if task is asyncio.current_task():
            return
        del self._tasks[user_address]
        task.cancel()

    def is_active(self, user_address: str) -> bool:
        task = self._tasks.get(user_address)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return len(self._tasks)

    async def _run(self, user_address: str, channel_id: str):
        try:
            await asyncio.sleep(self.warning_timeout)
            logger.info("Session %s idle for %ss, sending warning", user_address, self.warning_timeout)
            await self.on_warning(user_address, channel_id)
            await asyncio.sleep(self.termination_timeout)
            logger.info("Session %s expired after inactivity", user_address)
            await self.on_expire(user_address, channel_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Inactivity timer for %s failed", user_address)
        finally:
            if self._tasks.get(user_address) is asyncio.current_task():
                del self._tasks[user_address]

    async def shutdown(self, timeout: Optional[float] = 5.0):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
