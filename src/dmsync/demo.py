from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Set, TextIO

from .client import MessagingClient
from .events import ConversationOpened, MessageArrived, Notice, RosterUpdated
from .http_substrate import HttpSubstrate
from .memory import InMemorySubstrate
from .models import Profile
from .session import AuthSession

logger = logging.getLogger(__name__)


def event_to_dict(user_id: str, event: Any) -> Dict[str, Any]:
    if isinstance(event, ConversationOpened):
        return {
            "t": "conversation.opened",
            "user": user_id,
            "conversation_id": event.conversation_id,
            "peer_id": event.peer_id,
            "live": event.live,
            "messages": [m.to_row() | {"sender_name": m.sender_name} for m in event.messages],
        }
    if isinstance(event, MessageArrived):
        return {
            "t": "message.arrived",
            "user": user_id,
            "conversation_id": event.conversation_id,
            "message": event.message.to_row() | {"sender_name": event.message.sender_name},
        }
    if isinstance(event, RosterUpdated):
        return {
            "t": "roster.updated",
            "user": user_id,
            "entries": [
                {"user_id": e.user_id, "display_name": e.display_name, "online": e.online} for e in event.entries
            ],
        }
    if isinstance(event, Notice):
        return {"t": "notice", "user": user_id, "kind": event.kind, "message": event.message}
    return {"t": type(event).__name__, "user": user_id}


async def _wait_until(predicate: Callable[[], bool], timeout_s: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(0.01)
    return True


async def run_demo(output: TextIO, *, base_url: str | None = None, timeout_s: float = 5.0) -> None:
    """Alice opens a conversation with Bob and says hello; both print events."""

    substrate = HttpSubstrate(base_url) if base_url else InMemorySubstrate()
    await substrate.upsert_profile(Profile(id="alice", email="alice@example.com"))
    await substrate.upsert_profile(Profile(id="bob", username="bob"))

    clients = {
        user_id: MessagingClient(substrate, AuthSession(user_id=user_id)) for user_id in ("alice", "bob")
    }
    arrived: Set[str] = set()

    def record(user_id: str, event: Any) -> None:
        if isinstance(event, MessageArrived):
            arrived.add(user_id)
        output.write(json.dumps(event_to_dict(user_id, event)) + "\n")

    for user_id, client in clients.items():
        client.add_listener(lambda event, user_id=user_id: record(user_id, event))

    try:
        for client in clients.values():
            await client.start()
        await clients["alice"].select_peer("bob")
        await clients["bob"].select_peer("alice")
        await clients["alice"].send_message("hello")
        if not await _wait_until(lambda: arrived >= set(clients), timeout_s):
            logger.warning("hello not delivered to %s within %.1fs", sorted(set(clients) - arrived), timeout_s)
        for client in clients.values():
            await client.on_session_end()
    finally:
        await substrate.close()
