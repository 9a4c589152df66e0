from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict

import aiohttp

from .errors import ConstraintViolation, TransportError, UniqueViolation
from .feed import Callback, LostCallback, RowFilter
from .models import Change, Conversation, Message, Profile

logger = logging.getLogger(__name__)


@dataclass
class HttpConfig:
    base_url: str
    request_timeout_s: float = 10.0
    heartbeat_s: float = 30.0


@dataclass(eq=False)
class RemoteSubscription:
    table: str
    callback: Callback
    on_lost: LostCallback | None = None
    sub_id: str | None = None


class HttpSubstrate:
    """Substrate client for the ``dmsync serve`` HTTP/WebSocket API.

    Every subscription shares one lazily opened websocket. A reader task
    routes ``changes.event`` frames to callbacks by subscription id, in the
    order the server sent them.
    """

    def __init__(self, config: HttpConfig | str, *, session: aiohttp.ClientSession | None = None) -> None:
        self.config = HttpConfig(base_url=config) if isinstance(config, str) else config
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._ws_lock = asyncio.Lock()
        self._subscriptions: Dict[str, RemoteSubscription] = {}
        self._awaiting_ack: Dict[str, RemoteSubscription] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._request_ids = itertools.count(1)
        self._closing = False

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any] | None:
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
        try:
            async with self._client().request(method, self._url(path), timeout=timeout, **kwargs) as resp:
                if resp.status == 404:
                    return None
                payload = await resp.json(content_type=None)
                if resp.status == 409:
                    raise UniqueViolation(payload.get("message", "conflict"))
                if resp.status == 422:
                    raise ConstraintViolation(payload.get("message", "constraint violation"))
                if resp.status >= 400:
                    raise TransportError(f"{method} {path} failed with {resp.status}: {payload.get('message')}")
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

    async def upsert_profile(self, profile: Profile) -> Profile:
        payload = await self._request("PUT", f"/v1/profiles/{profile.id}", json=profile.to_row())
        if payload is None:
            raise TransportError("profile upsert returned no row")
        return Profile.from_row(payload)

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> Profile | None:
        payload = await self._request("PATCH", f"/v1/profiles/{user_id}", json=fields)
        return Profile.from_row(payload) if payload else None

    async def get_profile(self, user_id: str) -> Profile | None:
        payload = await self._request("GET", f"/v1/profiles/{user_id}")
        return Profile.from_row(payload) if payload else None

    async def list_profiles(self, exclude_id: str | None = None) -> list[Profile]:
        params = {"exclude": exclude_id} if exclude_id is not None else None
        payload = await self._request("GET", "/v1/profiles", params=params) or {}
        return [Profile.from_row(row) for row in payload.get("profiles", [])]

    async def find_conversation(self, user_a: str, user_b: str) -> Conversation | None:
        payload = await self._request("POST", "/v1/conversations/find", json={"user_a": user_a, "user_b": user_b})
        row = (payload or {}).get("conversation")
        return Conversation.from_row(row) if row else None

    async def insert_conversation(self, participant1_id: str, participant2_id: str) -> Conversation:
        payload = await self._request(
            "POST",
            "/v1/conversations",
            json={"participant1_id": participant1_id, "participant2_id": participant2_id},
        )
        if payload is None:
            raise TransportError("conversation insert returned no row")
        return Conversation.from_row(payload)

    async def list_messages(self, conversation_id: str) -> list[Message]:
        payload = await self._request("GET", f"/v1/conversations/{conversation_id}/messages") or {}
        return [Message.from_row(row) for row in payload.get("messages", [])]

    async def insert_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        payload = await self._request(
            "POST",
            "/v1/messages",
            json={"conversation_id": conversation_id, "sender_id": sender_id, "content": content},
        )
        if payload is None:
            raise TransportError("message insert returned no row")
        return Message.from_row(payload)

    async def _ensure_ws(self) -> aiohttp.ClientWebSocketResponse:
        async with self._ws_lock:
            if self._ws is not None and not self._ws.closed:
                return self._ws
            if self._reader_task is not None:
                # The previous reader must finish reporting its lost subscriptions first.
                await asyncio.gather(self._reader_task, return_exceptions=True)
            try:
                self._ws = await self._client().ws_connect(
                    self._url("/v1/realtime"), heartbeat=self.config.heartbeat_s
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise TransportError(f"realtime connect failed: {exc}") from exc
            self._reader_task = asyncio.create_task(self._reader(self._ws))
            return self._ws

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    frame = msg.json()
                except ValueError:
                    logger.warning("dropping malformed realtime frame")
                    continue
                self._dispatch(frame)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(TransportError("realtime connection closed"))
            self._pending.clear()
            self._awaiting_ack.clear()
            lost = list(self._subscriptions.values())
            self._subscriptions.clear()
            if not self._closing:
                self._report_lost(lost)

    def _report_lost(self, subscriptions: list[RemoteSubscription]) -> None:
        if subscriptions:
            logger.warning("realtime connection lost with %d live subscriptions", len(subscriptions))
        error = TransportError("realtime connection closed")
        for subscription in subscriptions:
            if subscription.on_lost is None:
                continue
            try:
                subscription.on_lost(error)
            except Exception:
                logger.exception("lost-subscription callback failed for %s", subscription.table)

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "changes.event":
            subscription = self._subscriptions.get(body.get("sub"))
            if subscription is not None:
                subscription.callback(Change.from_dict(body))
            return
        request_id = frame.get("id")
        if frame_type == "changes.subscribed":
            # Register before the next frame is read; events can follow the ack immediately.
            subscription = self._awaiting_ack.pop(request_id, None)
            if subscription is not None:
                subscription.sub_id = body.get("sub")
                self._subscriptions[subscription.sub_id] = subscription
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return
        if frame_type == "error":
            future.set_exception(TransportError(body.get("message", "realtime request failed")))
        else:
            future.set_result(body)

    async def _call(
        self,
        frame_type: str,
        body: Dict[str, Any],
        *,
        subscription: RemoteSubscription | None = None,
    ) -> Dict[str, Any]:
        ws = await self._ensure_ws()
        request_id = f"r{next(self._request_ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        if subscription is not None:
            self._awaiting_ack[request_id] = subscription
        try:
            await ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
            return await asyncio.wait_for(future, timeout=self.config.request_timeout_s)
        except (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{frame_type} failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)
            self._awaiting_ack.pop(request_id, None)

    async def subscribe(
        self,
        table: str,
        callback: Callback,
        *,
        row_filter: RowFilter | None = None,
        on_lost: LostCallback | None = None,
    ) -> RemoteSubscription:
        body: Dict[str, Any] = {"table": table, "filter": None}
        if row_filter is not None:
            body["filter"] = {"column": row_filter[0], "value": row_filter[1]}
        subscription = RemoteSubscription(table=table, callback=callback, on_lost=on_lost)
        await self._call("changes.subscribe", body, subscription=subscription)
        return subscription

    async def unsubscribe(self, handle: RemoteSubscription) -> None:
        if handle.sub_id is None or self._subscriptions.pop(handle.sub_id, None) is None:
            return
        if self._ws is None or self._ws.closed:
            return
        await self._call("changes.unsubscribe", {"sub": handle.sub_id})

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
