from __future__ import annotations

import sqlite3
import uuid
from typing import Any, Callable, Dict

from .errors import ConstraintViolation, TransportError, UniqueViolation
from .feed import Callback, ChangeFeed, FeedSubscription, LostCallback, RowFilter
from .memory import PROFILE_FIELDS
from .models import INSERT, UPDATE, Change, Conversation, Message, Profile, _now_ms
from .sqlite_backend import SQLiteBackend

_PROFILE_COLUMNS = "id, username, email, online_status, last_seen_ms, avatar_url"
_CONVERSATION_COLUMNS = "id, participant1_id, participant2_id, created_at_ms"
_MESSAGE_COLUMNS = "id, conversation_id, sender_id, content, created_at_ms"


def _translate(exc: sqlite3.Error) -> TransportError:
    if isinstance(exc, sqlite3.IntegrityError):
        if "UNIQUE constraint failed" in str(exc):
            return UniqueViolation(str(exc))
        return ConstraintViolation(str(exc))
    return TransportError(str(exc))


def _profile_from_row(row: sqlite3.Row) -> Profile:
    return Profile(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        online_status=bool(row["online_status"]),
        last_seen_ms=row["last_seen_ms"],
        avatar_url=row["avatar_url"],
    )


class SQLiteSubstrate:
    """Durable substrate backed by SQLite.

    Uniqueness of a conversation per unordered pair is enforced by the
    ``conversations_pair`` index; callers see a collision as
    :class:`UniqueViolation`. Changes are published to the feed only after
    the write committed.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func
        self.feed = ChangeFeed()

    def _fetchone(self, query: str, params: tuple) -> sqlite3.Row | None:
        try:
            with self._backend.lock:
                return self._backend.connection.execute(query, params).fetchone()
        except sqlite3.Error as exc:
            raise _translate(exc) from exc

    def _fetchall(self, query: str, params: tuple) -> list[sqlite3.Row]:
        try:
            with self._backend.lock:
                return self._backend.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise _translate(exc) from exc

    def _execute(self, query: str, params: tuple) -> int:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute(query, params)
                rowcount = cursor.rowcount
                conn.commit()
                return rowcount
            except sqlite3.Error as exc:
                conn.rollback()
                raise _translate(exc) from exc
            finally:
                cursor.close()

    async def upsert_profile(self, profile: Profile) -> Profile:
        previous = await self.get_profile(profile.id)
        self._execute(
            f"""
            INSERT INTO profiles ({_PROFILE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                username=excluded.username,
                email=excluded.email,
                online_status=excluded.online_status,
                last_seen_ms=excluded.last_seen_ms,
                avatar_url=excluded.avatar_url
            """,
            (
                profile.id,
                profile.username,
                profile.email,
                int(profile.online_status),
                profile.last_seen_ms,
                profile.avatar_url,
            ),
        )
        self.feed.publish(
            Change(
                table="profiles",
                op=UPDATE if previous else INSERT,
                new=profile.to_row(),
                old=previous.to_row() if previous else None,
            )
        )
        return profile

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> Profile | None:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ConstraintViolation(f"unknown profile fields: {sorted(unknown)}")
        previous = await self.get_profile(user_id)
        if previous is None:
            return None
        if fields:
            columns = sorted(fields)
            assignments = ", ".join(f"{column}=?" for column in columns)
            values = [int(fields[c]) if c == "online_status" else fields[c] for c in columns]
            self._execute(f"UPDATE profiles SET {assignments} WHERE id=?", (*values, user_id))
        updated = await self.get_profile(user_id)
        if updated is None:
            return None
        self.feed.publish(Change(table="profiles", op=UPDATE, new=updated.to_row(), old=previous.to_row()))
        return updated

    async def get_profile(self, user_id: str) -> Profile | None:
        row = self._fetchone(f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id=?", (user_id,))
        if row is None:
            return None
        return _profile_from_row(row)

    async def list_profiles(self, exclude_id: str | None = None) -> list[Profile]:
        if exclude_id is None:
            rows = self._fetchall(f"SELECT {_PROFILE_COLUMNS} FROM profiles ORDER BY id", ())
        else:
            rows = self._fetchall(
                f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id<>? ORDER BY id", (exclude_id,)
            )
        return [_profile_from_row(row) for row in rows]

    async def find_conversation(self, user_a: str, user_b: str) -> Conversation | None:
        row = self._fetchone(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE (participant1_id=? AND participant2_id=?) OR (participant1_id=? AND participant2_id=?)
            """,
            (user_a, user_b, user_b, user_a),
        )
        if row is None:
            return None
        return Conversation.from_row(dict(row))

    async def insert_conversation(self, participant1_id: str, participant2_id: str) -> Conversation:
        conversation = Conversation(
            id=str(uuid.uuid4()),
            participant1_id=participant1_id,
            participant2_id=participant2_id,
            created_at_ms=self._now(),
        )
        self._execute(
            f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?)",
            (conversation.id, participant1_id, participant2_id, conversation.created_at_ms),
        )
        self.feed.publish(Change(table="conversations", op=INSERT, new=conversation.to_row()))
        return conversation

    async def list_messages(self, conversation_id: str) -> list[Message]:
        rows = self._fetchall(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE conversation_id=?
            ORDER BY created_at_ms ASC, id ASC
            """,
            (conversation_id,),
        )
        return [Message.from_row(dict(row)) for row in rows]

    async def insert_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at_ms=self._now(),
        )
        self._execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            (message.id, conversation_id, sender_id, content, message.created_at_ms),
        )
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
        return self.feed.subscribe(table, callback, row_filter, on_lost)

    async def unsubscribe(self, handle: FeedSubscription) -> None:
        self.feed.unsubscribe(handle)

    async def close(self) -> None:
        self.feed.close()
        self._backend.close()
