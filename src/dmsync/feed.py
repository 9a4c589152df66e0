from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

from .errors import TransportError
from .models import Change


Callback = Callable[[Change], None]
LostCallback = Callable[[TransportError], None]
RowFilter = Tuple[str, Any]


@dataclass(eq=False)
class FeedSubscription:
    table: str
    callback: Callback
    row_filter: RowFilter | None = None
    on_lost: LostCallback | None = None
    active: bool = field(default=True, init=False)

    def matches(self, change: Change) -> bool:
        if change.table != self.table:
            return False
        if self.row_filter is None:
            return True
        column, value = self.row_filter
        row = change.row
        return row is not None and row.get(column) == value

    def deliver(self, change: Change) -> None:
        if self.active:
            self.callback(change)


class ChangeFeed:
    """Registers table subscriptions and fans out row changes to them.

    Deliveries are scheduled on the running loop rather than invoked inline,
    so publishers never re-enter subscriber code and each subscription sees
    changes in publish order.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[FeedSubscription]] = {}

    def subscribe(
        self,
        table: str,
        callback: Callback,
        row_filter: RowFilter | None = None,
        on_lost: LostCallback | None = None,
    ) -> FeedSubscription:
        subscription = FeedSubscription(table=table, callback=callback, row_filter=row_filter, on_lost=on_lost)
        self._subscriptions.setdefault(table, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: FeedSubscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.table)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.table, None)

    def subscriber_count(self, table: str | None = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    def publish(self, change: Change) -> None:
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions.get(change.table, [])):
            if subscription.matches(change):
                loop.call_soon(subscription.deliver, change)

    def close(self) -> None:
        """Drop every subscription, telling each holder its feed is gone."""

        closed = [s for subs in self._subscriptions.values() for s in subs]
        self._subscriptions.clear()
        for subscription in closed:
            subscription.active = False
            if subscription.on_lost is not None:
                subscription.on_lost(TransportError("change feed closed"))
