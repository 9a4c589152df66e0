from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Set

from .errors import SubscriptionError, TransportError
from .events import MessageInserted, ProfileChanged
from .models import INSERT, Change, Message, Profile
from .substrate import Substrate

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]
Translator = Callable[[Change], Awaitable[Any]]
LostHandler = Callable[[SubscriptionError], Awaitable[None] | None]

_LOST = object()


@dataclass(eq=False)
class BridgeSubscription:
    table: str
    conversation_id: str | None = None
    handle: Any = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    closed: bool = False
    error: TransportError | None = None


class LiveEventBridge:
    """Turns raw substrate change notifications into typed domain events.

    Each subscription owns a queue drained by one worker task, so events
    reach the handler strictly in the order the substrate emitted them even
    though message events need an extra round trip for the sender's name.
    At most one conversation subscription is live at a time.
    """

    def __init__(self, substrate: Substrate) -> None:
        self._substrate = substrate
        self._conversation: BridgeSubscription | None = None
        self._active: Set[BridgeSubscription] = set()

    @property
    def conversation_subscription(self) -> BridgeSubscription | None:
        return self._conversation

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def subscribe_to_conversation(
        self, conversation_id: str, on_insert: Handler, *, on_lost: LostHandler | None = None
    ) -> BridgeSubscription:
        if self._conversation is not None:
            await self.unsubscribe(self._conversation)

        subscription = await self._open(
            "messages",
            on_insert,
            self._message_event,
            row_filter=("conversation_id", conversation_id),
            conversation_id=conversation_id,
            on_lost=on_lost,
        )
        previous, self._conversation = self._conversation, subscription
        if previous is not None:
            await self.unsubscribe(previous)
        logger.debug("subscribed to conversation %s", conversation_id)
        return subscription

    async def subscribe_to_profile_changes(
        self, on_change: Handler, *, on_lost: LostHandler | None = None
    ) -> BridgeSubscription:
        return await self._open("profiles", on_change, self._profile_event, on_lost=on_lost)

    async def unsubscribe(self, subscription: BridgeSubscription) -> None:
        if subscription.closed:
            return
        subscription.closed = True
        self._active.discard(subscription)
        if self._conversation is subscription:
            self._conversation = None
        if subscription.handle is not None:
            try:
                await self._substrate.unsubscribe(subscription.handle)
            except TransportError as exc:
                logger.debug("unsubscribe from %s failed: %s", subscription.table, exc)
        task = subscription.task
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        for subscription in list(self._active):
            await self.unsubscribe(subscription)

    async def _open(
        self,
        table: str,
        handler: Handler,
        translate: Translator,
        *,
        row_filter: tuple[str, Any] | None = None,
        conversation_id: str | None = None,
        on_lost: LostHandler | None = None,
    ) -> BridgeSubscription:
        subscription = BridgeSubscription(table=table, conversation_id=conversation_id)

        def enqueue(change: Change) -> None:
            if not subscription.closed:
                subscription.queue.put_nowait(change)

        def lost(error: TransportError) -> None:
            if not subscription.closed and subscription.error is None:
                subscription.error = error
                subscription.queue.put_nowait(_LOST)

        try:
            subscription.handle = await self._substrate.subscribe(
                table, enqueue, row_filter=row_filter, on_lost=lost
            )
        except TransportError as exc:
            raise SubscriptionError(f"could not subscribe to {table}: {exc}") from exc
        subscription.task = asyncio.create_task(self._pump(subscription, translate, handler, on_lost))
        self._active.add(subscription)
        return subscription

    async def _pump(
        self,
        subscription: BridgeSubscription,
        translate: Translator,
        handler: Handler,
        on_lost: LostHandler | None,
    ) -> None:
        while True:
            change = await subscription.queue.get()
            if change is _LOST:
                break
            try:
                event = await translate(change)
                if event is None or subscription.closed:
                    continue
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("live %s handler failed", subscription.table)

        # Everything queued before the loss has been delivered.
        subscription.closed = True
        self._active.discard(subscription)
        if self._conversation is subscription:
            self._conversation = None
        logger.warning("live %s subscription lost: %s", subscription.table, subscription.error)
        if on_lost is None:
            return
        try:
            result = on_lost(SubscriptionError(f"live {subscription.table} updates lost: {subscription.error}"))
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("lost %s subscription handler failed", subscription.table)

    async def _message_event(self, change: Change) -> MessageInserted | None:
        if change.op != INSERT or change.new is None:
            return None
        message = Message.from_row(change.new)
        return MessageInserted(
            conversation_id=message.conversation_id,
            message=replace(message, sender_name=await self.sender_name(message.sender_id)),
        )

    async def _profile_event(self, change: Change) -> ProfileChanged:
        return ProfileChanged(
            op=change.op,
            profile=Profile.from_row(change.new) if change.new else None,
            previous=Profile.from_row(change.old) if change.old else None,
        )

    async def sender_name(self, sender_id: str) -> str:
        try:
            profile = await self._substrate.get_profile(sender_id)
        except TransportError as exc:
            logger.warning("sender lookup for %s failed: %s", sender_id, exc)
            return sender_id
        if profile is None:
            return sender_id
        return profile.display_name
