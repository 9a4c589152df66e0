from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Tuple

from .errors import ConstraintViolation, UniqueViolation
from .feed import Callback, ChangeFeed, FeedSubscription, LostCallback, RowFilter
from .models import (
    INSERT,
    UPDATE,
    Change,
    Conversation,
    Message,
    Profile,
    _now_ms,
    canonical_pair,
)

PROFILE_FIELDS = {"username", "email", "online_status", "last_seen_ms", "avatar_url"}


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemorySubstrate:
    """Dict-backed substrate honouring the same constraints as the SQLite schema.

    Every operation yields to the event loop once before touching state, so
    concurrent callers interleave the way they would across a network. The
    constraint checks and the write that follows them never straddle a
    suspension point.
    """

    def __init__(self, *, now_func: Callable[[], int] = _now_ms, id_func: Callable[[], str] = _new_id) -> None:
        self._now = now_func
        self._new_id = id_func
        self.feed = ChangeFeed()
        self._profiles: Dict[str, Profile] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._pairs: Dict[Tuple[str, str], str] = {}
        self._messages: Dict[str, List[Message]] = {}
        self.calls: List[str] = []

    async def _round_trip(self, operation: str) -> None:
        self.calls.append(operation)
        await asyncio.sleep(0)

    async def upsert_profile(self, profile: Profile) -> Profile:
        await self._round_trip("upsert_profile")
        previous = self._profiles.get(profile.id)
        stored = replace(profile)
        self._profiles[profile.id] = stored
        self.feed.publish(
            Change(
                table="profiles",
                op=UPDATE if previous else INSERT,
                new=stored.to_row(),
                old=previous.to_row() if previous else None,
            )
        )
        return replace(stored)

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> Profile | None:
        await self._round_trip("update_profile")
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ConstraintViolation(f"unknown profile fields: {sorted(unknown)}")
        previous = self._profiles.get(user_id)
        if previous is None:
            return None
        updated = replace(previous, **fields)
        self._profiles[user_id] = updated
        self.feed.publish(Change(table="profiles", op=UPDATE, new=updated.to_row(), old=previous.to_row()))
        return replace(updated)

    async def get_profile(self, user_id: str) -> Profile | None:
        await self._round_trip("get_profile")
        profile = self._profiles.get(user_id)
        return replace(profile) if profile else None

    async def list_profiles(self, exclude_id: str | None = None) -> list[Profile]:
        await self._round_trip("list_profiles")
        return [replace(p) for p in self._profiles.values() if p.id != exclude_id]

    async def find_conversation(self, user_a: str, user_b: str) -> Conversation | None:
        await self._round_trip("find_conversation")
        conv_id = self._pairs.get(canonical_pair(user_a, user_b))
        if conv_id is None:
            return None
        return self._conversations[conv_id]

    async def insert_conversation(self, participant1_id: str, participant2_id: str) -> Conversation:
        await self._round_trip("insert_conversation")
        if participant1_id == participant2_id:
            raise ConstraintViolation("participants must differ")
        for user_id in (participant1_id, participant2_id):
            if user_id not in self._profiles:
                raise ConstraintViolation(f"unknown user: {user_id}")
        pair = canonical_pair(participant1_id, participant2_id)
        if pair in self._pairs:
            raise UniqueViolation("conversation already exists for pair")
        conversation = Conversation(
            id=self._new_id(),
            participant1_id=participant1_id,
            participant2_id=participant2_id,
            created_at_ms=self._now(),
        )
        self._conversations[conversation.id] = conversation
        self._pairs[pair] = conversation.id
        self.feed.publish(Change(table="conversations", op=INSERT, new=conversation.to_row()))
        return conversation

    async def list_messages(self, conversation_id: str) -> list[Message]:
        await self._round_trip("list_messages")
        return sorted(self._messages.get(conversation_id, []), key=lambda m: m.sort_key)

    async def insert_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        await self._round_trip("insert_message")
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConstraintViolation("unknown conversation")
        if not conversation.has_participant(sender_id):
            raise ConstraintViolation("sender is not a participant")
        if not content.strip():
            raise ConstraintViolation("content must not be empty")
        message = Message(
            id=self._new_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at_ms=self._now(),
        )
        self._messages.setdefault(conversation_id, []).append(message)
        self.feed.publish(Change(table="messages", op=INSERT, new=message.to_row()))
        return message

    async def subscribe(
        self,
        table: str,
        callback: Callback,
        *,
        row_filter: RowFilter | None = None,
        on_lost: LostCallback | None = None,
    ) -> FeedSubscription:
        await self._round_trip("subscribe")
        return self.feed.subscribe(table, callback, row_filter, on_lost)

    async def unsubscribe(self, handle: FeedSubscription) -> None:
        self.feed.unsubscribe(handle)

    async def close(self) -> None:
        self.feed.close()

    def conversation_count(self) -> int:
        return len(self._conversations)
