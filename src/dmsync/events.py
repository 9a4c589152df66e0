"""Typed events delivered by the bridge and by the client facade."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .models import Message, Profile


@dataclass(frozen=True)
class MessageInserted:
    conversation_id: str
    message: Message


@dataclass(frozen=True)
class ProfileChanged:
    op: str
    profile: Profile | None
    previous: Profile | None = None


@dataclass(frozen=True)
class RosterEntry:
    user_id: str
    display_name: str
    online: bool
    last_seen_ms: int | None
    email: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_profile(cls, profile: Profile) -> "RosterEntry":
        return cls(
            user_id=profile.id,
            display_name=profile.display_name,
            online=profile.online_status,
            last_seen_ms=profile.last_seen_ms,
            email=profile.email,
            avatar_url=profile.avatar_url,
        )


@dataclass(frozen=True)
class ConversationOpened:
    conversation_id: str
    peer_id: str
    messages: Tuple[Message, ...]
    live: bool


@dataclass(frozen=True)
class MessageArrived:
    conversation_id: str
    message: Message


@dataclass(frozen=True)
class RosterUpdated:
    entries: Tuple[RosterEntry, ...]


@dataclass(frozen=True)
class Notice:
    """Advisory, non-fatal failure for the presentation layer to show."""

    kind: str
    message: str
    error: Exception | None = None
