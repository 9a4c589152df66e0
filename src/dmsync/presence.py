from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .errors import PresenceWriteError, TransportError
from .models import _now_ms
from .substrate import Substrate

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"


class PresenceTracker:
    """Writes the session owner's ``online_status``/``last_seen_ms``.

    Transitions: session start goes online, sign-out goes offline with an
    awaited write, disconnect goes offline with a fire-and-forget write.
    Written ``last_seen_ms`` values never decrease for one tracker, even if
    the wall clock steps backwards.
    """

    def __init__(self, substrate: Substrate, user_id: str, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._substrate = substrate
        self.user_id = user_id
        self._now = now_func
        self.state = OFFLINE
        self.last_seen_ms: int | None = None
        self._pending: set[asyncio.Task] = set()

    def _stamp(self) -> int:
        now_ms = self._now()
        if self.last_seen_ms is not None and now_ms < self.last_seen_ms:
            return self.last_seen_ms
        return now_ms

    async def _write(self, online: bool) -> int:
        last_seen_ms = self._stamp()
        self.last_seen_ms = last_seen_ms
        try:
            updated = await self._substrate.update_profile(
                self.user_id, {"online_status": online, "last_seen_ms": last_seen_ms}
            )
        except TransportError as exc:
            raise PresenceWriteError(f"presence write failed: {exc}") from exc
        if updated is None:
            raise PresenceWriteError(f"no profile for {self.user_id}")
        return last_seen_ms

    async def session_started(self) -> int:
        self.state = ONLINE
        return await self._write(True)

    async def signed_out(self) -> int:
        self.state = OFFLINE
        return await self._write(False)

    def disconnected(self) -> asyncio.Task | None:
        """Best-effort offline write for unload/termination signals.

        Nothing awaits the write and failures are dropped: the process may be
        gone before it completes, so presence can stay stale until the next
        session writes it again.
        """

        self.state = OFFLINE
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running loop, presence for %s left stale", self.user_id)
            return None
        task = loop.create_task(self._write_best_effort())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write_best_effort(self) -> None:
        try:
            await self._write(False)
        except PresenceWriteError as exc:
            logger.debug("dropped offline presence write for %s: %s", self.user_id, exc)
