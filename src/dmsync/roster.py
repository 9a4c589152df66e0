from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

from .bridge import BridgeSubscription, LiveEventBridge
from .errors import SubscriptionError, TransportError
from .events import ProfileChanged, RosterEntry
from .substrate import Substrate

logger = logging.getLogger(__name__)

Listener = Callable[[tuple[RosterEntry, ...]], None]
ErrorCallback = Callable[[TransportError], None]


class Roster:
    """Live list of every other user and their presence.

    Any profile change triggers a full refetch. Refetches can finish out of
    order; only the most recently started one is applied. A lost profile
    subscription is reported and re-established by the next refetch.
    """

    def __init__(
        self,
        substrate: Substrate,
        bridge: LiveEventBridge,
        user_id: str,
        *,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._substrate = substrate
        self._bridge = bridge
        self.user_id = user_id
        self._on_error = on_error
        self._entries: tuple[RosterEntry, ...] = ()
        self._listeners: List[Listener] = []
        self._subscription: BridgeSubscription | None = None
        self._started_generation = 0
        self._applied_generation = 0
        self._running = False
        self._subscribe_lock = asyncio.Lock()

    @property
    def entries(self) -> tuple[RosterEntry, ...]:
        return self._entries

    def online_count(self) -> int:
        return sum(1 for entry in self._entries if entry.online)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def start(self) -> tuple[RosterEntry, ...]:
        """Subscribe to profile changes and fetch the first snapshot.

        Subscription failures go to the error callback; the snapshot is
        still fetched and the next :meth:`refresh` tries to subscribe again.
        """

        self._running = True
        await self.refresh()
        return self._entries

    async def stop(self) -> None:
        self._running = False
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await self._bridge.unsubscribe(subscription)

    @property
    def live(self) -> bool:
        return self._subscription is not None

    async def _ensure_subscribed(self) -> None:
        async with self._subscribe_lock:
            if not self._running or self._subscription is not None:
                return
            try:
                self._subscription = await self._bridge.subscribe_to_profile_changes(
                    self._on_profile_changed, on_lost=self._on_subscription_lost
                )
            except SubscriptionError as exc:
                logger.warning("roster is not live: %s", exc)
                self._report(exc)

    def _on_subscription_lost(self, error: SubscriptionError) -> None:
        self._subscription = None
        self._report(error)

    def _report(self, error: TransportError) -> None:
        if self._on_error is not None:
            self._on_error(error)

    async def _on_profile_changed(self, event: ProfileChanged) -> None:
        logger.debug("profile %s %s, refreshing roster", event.op, event.profile.id if event.profile else "?")
        await self.refresh()

    async def refresh(self) -> tuple[RosterEntry, ...] | None:
        await self._ensure_subscribed()
        self._started_generation += 1
        generation = self._started_generation
        try:
            profiles = await self._substrate.list_profiles(exclude_id=self.user_id)
        except TransportError as exc:
            logger.warning("roster refresh failed: %s", exc)
            self._report(exc)
            return None
        if generation < self._applied_generation:
            return None
        self._applied_generation = generation
        entries = sorted(
            (RosterEntry.from_profile(p) for p in profiles if p.id != self.user_id),
            key=lambda e: (e.display_name.lower(), e.user_id),
        )
        self._entries = tuple(entries)
        for listener in list(self._listeners):
            listener(self._entries)
        return self._entries
