from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List

from .bridge import LiveEventBridge
from .errors import PresenceWriteError, SubscriptionError, TransportError, ValidationError
from .events import ConversationOpened, MessageArrived, MessageInserted, Notice, RosterEntry, RosterUpdated
from .models import Message, _now_ms
from .presence import PresenceTracker
from .resolver import ConversationResolver
from .roster import Roster
from .session import AuthSession
from .substrate import Substrate
from .timeline import MessageTimeline

logger = logging.getLogger(__name__)

SENT = "sent"
INVALID = "invalid"
FAILED = "failed"

Listener = Callable[[Any], None]


@dataclass
class ClientConfig:
    history_limit: int | None = None


@dataclass(frozen=True)
class SendOutcome:
    status: str
    message: Message | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status == SENT


class MessagingClient:
    """Presentation-facing facade for one signed-in user.

    Wires the resolver, timeline, bridge, presence tracker and roster around
    a single :class:`AuthSession`. Failures from the substrate never escape
    as exceptions from here; they are reported to listeners as
    :class:`Notice` events.
    """

    def __init__(
        self,
        substrate: Substrate,
        session: AuthSession,
        *,
        config: ClientConfig | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or ClientConfig()
        self.session = session
        self.substrate = substrate
        self.resolver = ConversationResolver(substrate)
        self.bridge = LiveEventBridge(substrate)
        self.timeline = MessageTimeline(
            substrate,
            history_limit=self.config.history_limit,
            name_lookup=self.bridge.sender_name,
        )
        self.presence = PresenceTracker(substrate, session.user_id, now_func=now_func)
        self.contacts = Roster(substrate, self.bridge, session.user_id, on_error=self._report_roster_error)
        self.contacts.add_listener(self._on_roster_updated)
        self.peer_id: str | None = None
        self.live = False
        self._listeners: List[Listener] = []
        self._select_task: asyncio.Task | None = None

    @property
    def user_id(self) -> str:
        return self.session.user_id

    @property
    def conversation_id(self) -> str | None:
        return self.timeline.conversation_id

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _emit(self, event: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("client listener failed on %s", type(event).__name__)

    def _notify(self, kind: str, error: Exception) -> None:
        self._emit(Notice(kind=kind, message=str(error), error=error))

    def _report_roster_error(self, error: TransportError) -> None:
        self._notify("subscription" if isinstance(error, SubscriptionError) else "transport", error)

    def _on_roster_updated(self, entries: tuple[RosterEntry, ...]) -> None:
        self._emit(RosterUpdated(entries=entries))

    async def start(self) -> None:
        """Mark the user online and start the live roster."""

        try:
            await self.presence.session_started()
        except PresenceWriteError as exc:
            self._notify("presence", exc)
        await self.contacts.start()

    def roster(self) -> tuple[RosterEntry, ...]:
        return self.contacts.entries

    async def select_peer(self, peer_id: str) -> ConversationOpened | None:
        """Open the conversation with ``peer_id``.

        A selection still in flight is cancelled first; its caller gets
        ``None``. Returns ``None`` as well when opening failed, in which case a
        :class:`Notice` was emitted.
        """

        previous = self._select_task
        task = asyncio.create_task(self._open_conversation(peer_id, previous))
        self._select_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._select_task is not task:
                return None
            raise

    async def _open_conversation(self, peer_id: str, previous: asyncio.Task | None) -> ConversationOpened | None:
        if previous is not None and not previous.done():
            previous.cancel()
            await asyncio.gather(previous, return_exceptions=True)
        self.peer_id = peer_id
        await self._drop_conversation()

        try:
            conversation = await self.resolver.resolve_conversation(self.user_id, peer_id)
        except ValidationError as exc:
            self._notify("validation", exc)
            return None
        except TransportError as exc:
            self._notify("transport", exc)
            return None

        self.timeline.open(conversation.id)
        try:
            await self.bridge.subscribe_to_conversation(
                conversation.id, self._on_message_inserted, on_lost=self._on_conversation_lost
            )
            self.live = True
        except SubscriptionError as exc:
            logger.warning("live updates unavailable for %s: %s", conversation.id, exc)
            self._notify("subscription", exc)

        try:
            messages = await self.timeline.load(conversation.id)
        except TransportError as exc:
            self._notify("transport", exc)
            await self._drop_conversation()
            return None
        if messages is None:
            return None

        opened = ConversationOpened(
            conversation_id=conversation.id,
            peer_id=peer_id,
            messages=tuple(messages),
            live=self.live,
        )
        self._emit(opened)
        return opened

    async def _drop_conversation(self) -> None:
        self.live = False
        current = self.bridge.conversation_subscription
        if current is not None:
            await self.bridge.unsubscribe(current)
        self.timeline.reset()

    def _on_conversation_lost(self, error: SubscriptionError) -> None:
        # The timeline keeps what it has; nothing new arrives until the peer is selected again.
        self.live = False
        self._notify("subscription", error)

    def _on_message_inserted(self, event: MessageInserted) -> None:
        changed = self.timeline.on_live_message(event.message)
        if changed and self.timeline.loaded:
            self._emit(MessageArrived(conversation_id=event.conversation_id, message=event.message))

    async def send_message(self, text: str | None = None) -> SendOutcome:
        """Send ``text`` (or the compose buffer) to the open conversation."""

        content = self.timeline.draft if text is None else text
        conversation_id = self.timeline.conversation_id
        try:
            if conversation_id is None:
                raise ValidationError("no conversation selected")
            message = await self.timeline.append(conversation_id, self.user_id, content)
        except ValidationError as exc:
            return SendOutcome(status=INVALID, error=exc)
        except TransportError as exc:
            self._notify("transport", exc)
            return SendOutcome(status=FAILED, error=exc)
        return SendOutcome(status=SENT, message=message)

    async def on_session_end(self) -> None:
        """Sign-out hook: offline write, auth sign-out, then teardown."""

        try:
            await self.presence.signed_out()
        except PresenceWriteError as exc:
            self._notify("presence", exc)
        try:
            await self.session.sign_out()
        finally:
            await self.close()

    def on_disconnect(self) -> asyncio.Task | None:
        return self.presence.disconnected()

    async def close(self) -> None:
        task = self._select_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._select_task = None
        await self.contacts.stop()
        await self.bridge.close()
        self.timeline.reset()
        self.peer_id = None
        self.live = False
