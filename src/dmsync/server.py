"""aiohttp substrate server plus the ``dmsync`` command line."""

from __future__ import annotations

import argparse
import asyncio
import itertools
import json
import logging
import sys
from typing import Any, Dict, TextIO, Union

from aiohttp import WSMsgType, web

from .errors import ConstraintViolation, TransportError, UniqueViolation
from .feed import FeedSubscription
from .memory import InMemorySubstrate
from .models import Change, Profile
from .sqlite_backend import SQLiteBackend
from .sqlite_substrate import SQLiteSubstrate
from .substrate import Substrate

logger = logging.getLogger(__name__)

SUBSCRIBABLE_TABLES = {"profiles", "conversations", "messages"}

substrate_key = web.AppKey("substrate", object)
ws_config_key = web.AppKey("ws_config", dict)


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _from_substrate_error(exc: TransportError) -> web.Response:
    if isinstance(exc, UniqueViolation):
        return _error("conflict", str(exc), 409)
    if isinstance(exc, ConstraintViolation):
        return _error("constraint_violation", str(exc), 422)
    return _error("unavailable", str(exc), 503)


async def _json_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_find_conversation(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    user_a = body.get("user_a")
    user_b = body.get("user_b")
    if not isinstance(user_a, str) or not isinstance(user_b, str):
        return _invalid_request("user_a and user_b required")
    try:
        conversation = await request.app[substrate_key].find_conversation(user_a, user_b)
    except TransportError as exc:
        return _from_substrate_error(exc)
    return web.json_response({"conversation": conversation.to_row() if conversation else None})


async def handle_insert_conversation(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    participant1_id = body.get("participant1_id")
    participant2_id = body.get("participant2_id")
    if not isinstance(participant1_id, str) or not isinstance(participant2_id, str):
        return _invalid_request("participant1_id and participant2_id required")
    try:
        conversation = await request.app[substrate_key].insert_conversation(participant1_id, participant2_id)
    except TransportError as exc:
        return _from_substrate_error(exc)
    return web.json_response(conversation.to_row())


async def handle_list_messages(request: web.Request) -> web.Response:
    conversation_id = request.match_info["conversation_id"]
    try:
        messages = await request.app[substrate_key].list_messages(conversation_id)
    except TransportError as exc:
        return _from_substrate_error(exc)
    return web.json_response({"messages": [m.to_row() for m in messages]})


async def handle_insert_message(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    conversation_id = body.get("conversation_id")
    sender_id = body.get("sender_id")
    content = body.get("content")
    if not all(isinstance(v, str) for v in (conversation_id, sender_id, content)):
        return _invalid_request("conversation_id, sender_id and content required")
    try:
        message = await request.app[substrate_key].insert_message(conversation_id, sender_id, content)
    except TransportError as exc:
        return _from_substrate_error(exc)
    return web.json_response(message.to_row())


async def handle_list_profiles(request: web.Request) -> web.Response:
    exclude_id = request.query.get("exclude")
    try:
        profiles = await request.app[substrate_key].list_profiles(exclude_id=exclude_id)
    except TransportError as exc:
        return _from_substrate_error(exc)
    return web.json_response({"profiles": [p.to_row() for p in profiles]})


async def handle_get_profile(request: web.Request) -> web.Response:
    user_id = request.match_info["user_id"]
    try:
        profile = await request.app[substrate_key].get_profile(user_id)
    except TransportError as exc:
        return _from_substrate_error(exc)
    if profile is None:
        return _error("not_found", "unknown profile", 404)
    return web.json_response(profile.to_row())


async def handle_put_profile(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    body["id"] = request.match_info["user_id"]
    try:
        profile = await request.app[substrate_key].upsert_profile(Profile.from_row(body))
    except TransportError as exc:
        return _from_substrate_error(exc)
    return web.json_response(profile.to_row())


async def handle_patch_profile(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    try:
        profile = await request.app[substrate_key].update_profile(request.match_info["user_id"], body)
    except TransportError as exc:
        return _from_substrate_error(exc)
    if profile is None:
        return _error("not_found", "unknown profile", 404)
    return web.json_response(profile.to_row())


def _frame(t: str, body: Dict[str, Any], *, request_id: str | None = None) -> Dict[str, Any]:
    return {"v": 1, "t": t, "id": request_id, "body": body}


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> Dict[str, Any]:
    return _frame("error", {"code": code, "message": message}, request_id=request_id)


async def realtime_handler(request: web.Request) -> web.WebSocketResponse:
    substrate = request.app[substrate_key]
    ws_config: Dict[str, Any] = request.app[ws_config_key]

    ws = web.WebSocketResponse(heartbeat=ws_config["heartbeat_s"], max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    outbound: asyncio.Queue[Union[Dict[str, Any], None]] = asyncio.Queue(maxsize=ws_config["max_queue"])
    subscriptions: Dict[str, FeedSubscription] = {}
    sub_ids = itertools.count(1)

    def enqueue(frame: Dict[str, Any]) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("realtime client too slow, closing")
            asyncio.create_task(ws.close(code=1011, message=b"backpressure"))

    async def writer() -> None:
        while True:
            frame = await outbound.get()
            if frame is None:
                break
            await ws.send_json(frame)

    writer_task = asyncio.create_task(writer())

    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                if msg.type == WSMsgType.ERROR:
                    break
                continue
            try:
                frame = msg.json()
            except ValueError:
                enqueue(_error_frame("invalid_request", "malformed json"))
                continue
            if not isinstance(frame, dict) or frame.get("v") != 1:
                enqueue(_error_frame("invalid_request", "unsupported version"))
                continue

            request_id = frame.get("id")
            frame_type = frame.get("t")
            body = frame.get("body") or {}

            if frame_type == "changes.subscribe":
                table = body.get("table")
                row_filter = body.get("filter")
                if table not in SUBSCRIBABLE_TABLES:
                    enqueue(_error_frame("invalid_request", "unknown table", request_id=request_id))
                    continue
                if row_filter is not None and (
                    not isinstance(row_filter, dict) or not isinstance(row_filter.get("column"), str)
                ):
                    enqueue(_error_frame("invalid_request", "filter needs a column", request_id=request_id))
                    continue
                sub_id = f"s{next(sub_ids)}"

                def on_change(change: Change, sub_id: str = sub_id) -> None:
                    enqueue(_frame("changes.event", {"sub": sub_id, **change.to_dict()}))

                try:
                    subscriptions[sub_id] = await substrate.subscribe(
                        table,
                        on_change,
                        row_filter=(row_filter["column"], row_filter.get("value")) if row_filter else None,
                    )
                except TransportError as exc:
                    enqueue(_error_frame("unavailable", str(exc), request_id=request_id))
                    continue
                enqueue(_frame("changes.subscribed", {"sub": sub_id}, request_id=request_id))
            elif frame_type == "changes.unsubscribe":
                subscription = subscriptions.pop(body.get("sub"), None)
                if subscription is not None:
                    await substrate.unsubscribe(subscription)
                enqueue(_frame("changes.unsubscribed", {"sub": body.get("sub")}, request_id=request_id))
            else:
                enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
    finally:
        for subscription in subscriptions.values():
            await substrate.unsubscribe(subscription)
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws


def create_app(
    *,
    substrate: Substrate | None = None,
    db_path: str | None = None,
    heartbeat_s: float = 30.0,
    max_msg_size: int = 1_048_576,
    max_queue: int = 1000,
) -> web.Application:
    if substrate is None:
        substrate = SQLiteSubstrate(SQLiteBackend(db_path)) if db_path is not None else InMemorySubstrate()

    app = web.Application()
    app[substrate_key] = substrate
    app[ws_config_key] = {"heartbeat_s": heartbeat_s, "max_msg_size": max_msg_size, "max_queue": max_queue}
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/conversations/find", handle_find_conversation)
    app.router.add_post("/v1/conversations", handle_insert_conversation)
    app.router.add_get("/v1/conversations/{conversation_id}/messages", handle_list_messages)
    app.router.add_post("/v1/messages", handle_insert_message)
    app.router.add_get("/v1/profiles", handle_list_profiles)
    app.router.add_get("/v1/profiles/{user_id}", handle_get_profile)
    app.router.add_put("/v1/profiles/{user_id}", handle_put_profile)
    app.router.add_patch("/v1/profiles/{user_id}", handle_patch_profile)
    app.router.add_get("/v1/realtime", realtime_handler)

    async def close_substrate(_: web.Application) -> None:
        await substrate.close()

    app.on_cleanup.append(close_substrate)
    return app


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(db_path=args.db, heartbeat_s=args.heartbeat)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _run_demo(args: argparse.Namespace, output: TextIO) -> int:
    from .demo import run_demo

    asyncio.run(run_demo(output, base_url=args.url))
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="dmsync", description="Direct-message sync substrate and demo")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp substrate server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--heartbeat", type=float, default=30.0, help="Seconds between websocket pings")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    demo_parser = subparsers.add_parser("demo", help="Run the two-user scenario and print client events")
    demo_parser.add_argument("--url", default=None, help="Substrate server URL; in-memory when omitted")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "serve":
        return _run_serve(args)
    return _run_demo(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
