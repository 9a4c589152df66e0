"""Storage/realtime substrate contract shared by the core components."""

from __future__ import annotations

from typing import Any, Callable, Dict, Protocol

from .errors import TransportError
from .models import Change, Conversation, Message, Profile

ChangeCallback = Callable[[Change], None]
LostCallback = Callable[[TransportError], None]


class Substrate(Protocol):
    """Contract implemented by the in-memory, SQLite and HTTP substrates.

    Every call is a coroutine and may raise :class:`TransportError`.
    """

    async def find_conversation(self, user_a: str, user_b: str) -> Conversation | None:
        """Return the conversation for the pair in either stored order."""

    async def insert_conversation(self, participant1_id: str, participant2_id: str) -> Conversation:
        """Create a conversation; a pair conflict raises ``UniqueViolation``."""

    async def list_messages(self, conversation_id: str) -> list[Message]:
        """Return messages ordered by ``(created_at_ms, id)``."""

    async def insert_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        ...

    async def get_profile(self, user_id: str) -> Profile | None:
        ...

    async def list_profiles(self, exclude_id: str | None = None) -> list[Profile]:
        ...

    async def upsert_profile(self, profile: Profile) -> Profile:
        ...

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> Profile | None:
        ...

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        row_filter: tuple[str, Any] | None = None,
        on_lost: LostCallback | None = None,
    ) -> Any:
        """Register for row changes on ``table``.

        ``on_lost`` is called once if the subscription ends without being
        unsubscribed, for example when the realtime connection drops.
        """

    async def unsubscribe(self, handle: Any) -> None:
        ...

    async def close(self) -> None:
        ...
