"""WebSocket endpoint streaming a user's inbox in real time."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, Depends, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from amply.realtime.managers import create_inbox_supervisor, safe_send_json
from amply.realtime.supervisor import InboxSupervisor

from app.api.deps import get_sync_service
from app.config import get_settings
from app.core.security import user_id_from_token
from app.services.errors import InvalidArgument, NotAuthenticated, SyncError
from app.services.sync import SocialSyncService

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = False
            if interval <= 0:
                should_ping = True
            else:
                if now - last_activity >= interval and (
                    last_ping_sent is None or now - last_ping_sent >= interval
                ):
                    should_ping = True

            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket) -> int | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        return user_id_from_token(token)
    except NotAuthenticated:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


async def _send_error(websocket: WebSocket, exc: SyncError) -> None:
    await safe_send_json(websocket, {"type": "error", **exc.to_dict()})


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"'{key}' must be an integer")
    return value


def _optional_ids(payload: dict[str, Any]) -> list[int] | None:
    value = payload.get("message_ids")
    if value is None:
        return None
    if not isinstance(value, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in value
    ):
        raise InvalidArgument("'message_ids' must be a list of integers")
    return value


async def _dispatch(supervisor: InboxSupervisor, payload: dict[str, Any]) -> None:
    action = payload.get("type")
    if action == "open_thread":
        await supervisor.open_thread(_require_int(payload, "conversation_id"))
    elif action == "close_thread":
        await supervisor.close_thread()
    elif action == "send_message":
        content = payload.get("content")
        if not isinstance(content, str):
            raise InvalidArgument("'content' must be a string")
        client_id = payload.get("client_id")
        await supervisor.send_message(
            _require_int(payload, "conversation_id"),
            content,
            client_id=str(client_id) if client_id else None,
        )
    elif action == "mark_read":
        conversation_id = payload.get("conversation_id")
        message_ids = _optional_ids(payload)
        if conversation_id is None and not message_ids:
            raise InvalidArgument("Either conversation_id or message_ids must be provided")
        await supervisor.mark_read(
            conversation_id=_require_int(payload, "conversation_id")
            if conversation_id is not None
            else None,
            message_ids=message_ids,
        )
    elif action == "reconcile":
        await supervisor.reconcile()
    else:
        raise InvalidArgument(f"Unsupported action '{action}'")


@router.websocket("/inbox")
async def websocket_inbox(
    websocket: WebSocket,
    service: SocialSyncService = Depends(get_sync_service),
) -> None:
    """Stream unread counts, notifications and the open thread for one user."""

    user_id = await _resolve_user(websocket)
    if user_id is None:
        return

    await websocket.accept()

    async def sink(frame: dict[str, Any]) -> None:
        await safe_send_json(websocket, frame)

    supervisor = create_inbox_supervisor(user_id, service, sink)
    await supervisor.start()

    timeout_seconds = settings.websocket_keepalive_timeout_seconds
    ping_interval = settings.websocket_keepalive_ping_interval_seconds

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=timeout_seconds,
            ping_interval_seconds=ping_interval,
        ):
            if not raw_message:
                continue
            if raw_message.strip().lower() == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, InvalidArgument("Invalid payload"))
                continue
            if not isinstance(payload, dict):
                await _send_error(websocket, InvalidArgument("Invalid payload"))
                continue
            if payload.get("type") == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue
            if payload.get("type") == "pong":
                continue

            try:
                await _dispatch(supervisor, payload)
            except SyncError as exc:
                await _send_error(websocket, exc)
    finally:
        await supervisor.stop()
        logger.debug("Inbox socket closed", extra={"user_id": user_id})
