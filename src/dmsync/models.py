from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


def _now_ms() -> int:
    return int(time.time() * 1000)


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Return the order-independent key for a two-party conversation."""

    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


def derived_handle(username: str | None, email: str | None, fallback: str) -> str:
    if username:
        return username
    if email:
        return email.split("@", 1)[0]
    return fallback


@dataclass
class Profile:
    id: str
    username: str | None = None
    email: str | None = None
    online_status: bool = False
    last_seen_ms: int | None = None
    avatar_url: str | None = None

    @property
    def display_name(self) -> str:
        return derived_handle(self.username, self.email, self.id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "online_status": self.online_status,
            "last_seen_ms": self.last_seen_ms,
            "avatar_url": self.avatar_url,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        return cls(
            id=row["id"],
            username=row.get("username"),
            email=row.get("email"),
            online_status=bool(row.get("online_status")),
            last_seen_ms=row.get("last_seen_ms"),
            avatar_url=row.get("avatar_url"),
        )


@dataclass(frozen=True)
class Conversation:
    id: str
    participant1_id: str
    participant2_id: str
    created_at_ms: int

    @property
    def pair(self) -> Tuple[str, str]:
        return canonical_pair(self.participant1_id, self.participant2_id)

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant1_id, self.participant2_id)

    def other(self, user_id: str) -> str:
        if user_id == self.participant1_id:
            return self.participant2_id
        if user_id == self.participant2_id:
            return self.participant1_id
        raise ValueError("user is not a participant")

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participant1_id": self.participant1_id,
            "participant2_id": self.participant2_id,
            "created_at_ms": self.created_at_ms,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Conversation":
        return cls(
            id=row["id"],
            participant1_id=row["participant1_id"],
            participant2_id=row["participant2_id"],
            created_at_ms=int(row["created_at_ms"]),
        )


@dataclass(frozen=True)
class Message:
    """An immutable message row.

    ``sender_name`` is display data resolved by the client and takes no part
    in equality.
    """

    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at_ms: int
    sender_name: str | None = field(default=None, compare=False)

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.created_at_ms, self.id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "created_at_ms": self.created_at_ms,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Message":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            created_at_ms=int(row["created_at_ms"]),
        )


@dataclass(frozen=True)
class Change:
    """A raw row-change notification emitted by a substrate."""

    table: str
    op: str
    new: Dict[str, Any] | None = None
    old: Dict[str, Any] | None = None

    @property
    def row(self) -> Dict[str, Any] | None:
        return self.new if self.new is not None else self.old

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "op": self.op, "new": self.new, "old": self.old}

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "Change":
        return cls(table=body["table"], op=body["op"], new=body.get("new"), old=body.get("old"))
