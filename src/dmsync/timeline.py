from __future__ import annotations

import bisect
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Iterable, List

from .errors import ValidationError
from .models import Message
from .substrate import Substrate

logger = logging.getLogger(__name__)


class MessageTimeline:
    """Ordered, duplicate-free view of the active conversation's messages.

    The sequence is built from two sources that race each other: the
    history snapshot returned by :meth:`load` and rows pushed through
    :meth:`on_live_message`. Both are merged by message id, so the result is
    the same whichever source delivers a row first. Every activation bumps
    a generation counter; a load that completes for an older generation is
    discarded.
    """

    def __init__(
        self,
        substrate: Substrate,
        *,
        history_limit: int | None = None,
        name_lookup: Callable[[str], Awaitable[str]] | None = None,
    ) -> None:
        self._substrate = substrate
        self._history_limit = history_limit
        self._name_lookup = name_lookup
        self._conversation_id: str | None = None
        self._generation = 0
        self._messages: List[Message] = []
        self._ids: Dict[str, Message] = {}
        self.loaded = False
        self.draft = ""

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def open(self, conversation_id: str | None) -> int:
        """Make ``conversation_id`` active, discarding the previous sequence."""

        self._generation += 1
        self._conversation_id = conversation_id
        self._messages = []
        self._ids = {}
        self.loaded = False
        return self._generation

    def reset(self) -> None:
        self.open(None)

    async def load(self, conversation_id: str) -> list[Message] | None:
        """Fetch the history snapshot and merge it into the active sequence.

        Returns the merged sequence, or ``None`` when another conversation is
        active, either before the call or by the time the fetch returns.
        """

        if self._conversation_id is None:
            self.open(conversation_id)
        elif self._conversation_id != conversation_id:
            logger.debug("not loading %s, %s is active", conversation_id, self._conversation_id)
            return None
        generation = self._generation
        snapshot = await self._substrate.list_messages(conversation_id)
        if self._name_lookup is not None and snapshot:
            names = {}
            for sender_id in {m.sender_id for m in snapshot}:
                names[sender_id] = await self._name_lookup(sender_id)
            snapshot = [replace(m, sender_name=names[m.sender_id]) for m in snapshot]
        if generation != self._generation or self._conversation_id != conversation_id:
            logger.debug("discarding stale history for %s", conversation_id)
            return None

        self._merge(snapshot)
        if self._history_limit is not None and len(self._messages) > self._history_limit:
            for dropped in self._messages[: len(self._messages) - self._history_limit]:
                self._ids.pop(dropped.id, None)
            self._messages = self._messages[-self._history_limit :]
        self.loaded = True
        return list(self._messages)

    def _merge(self, snapshot: Iterable[Message]) -> None:
        for message in snapshot:
            if message.conversation_id != self._conversation_id:
                continue
            known = self._ids.get(message.id)
            if known is None:
                self._ids[message.id] = message
                self._messages.append(message)
            elif known.sender_name is None and message.sender_name is not None:
                self._replace(message)
        self._messages.sort(key=lambda m: m.sort_key)

    def _replace(self, message: Message) -> None:
        self._ids[message.id] = message
        for index, existing in enumerate(self._messages):
            if existing.id == message.id:
                self._messages[index] = message
                return

    def on_live_message(self, message: Message) -> bool:
        """Apply a pushed insert; returns ``True`` when the sequence changed."""

        if message.conversation_id != self._conversation_id:
            logger.debug("ignoring live message %s for inactive conversation", message.id)
            return False
        if message.id in self._ids:
            return False
        self._ids[message.id] = message
        if not self._messages or self._messages[-1].sort_key <= message.sort_key:
            self._messages.append(message)
        else:
            bisect.insort(self._messages, message, key=lambda m: m.sort_key)
        return True

    async def append(self, conversation_id: str, sender_id: str, content: str) -> Message:
        """Persist a new message.

        The returned row is not spliced into the sequence; it arrives through
        the live channel like everyone else's messages.
        """

        text = (content or "").strip()
        if not text:
            raise ValidationError("message content must not be empty")
        message = await self._substrate.insert_message(conversation_id, sender_id, text)
        self.draft = ""
        return message
