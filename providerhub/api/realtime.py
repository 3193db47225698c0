"""
providerhub/api/realtime.py
WebSocket endpoint for call signaling.

Implements /v1/ws/calls/{room_id} with bearer JWT + X-User-Id auth. The room
id is the id of an accepted provider/client relationship; only its two
parties may join, and the provider only while the relationship is within
their plan's limit.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4
import logging
import json

from providerhub.realtime.hub import hub
from providerhub.core.auth import authenticate_headers
from providerhub.core.errors import AppError, AuthenticationError
from providerhub.core.logging import log_event
from providerhub.core.config import settings
from providerhub.features.relationships.service import require_call_participant
from providerhub.models.call import SignalKind

logger = logging.getLogger("providerhub")

router = APIRouter()

_SIGNAL_KINDS = {k.value for k in SignalKind}


@router.websocket("/v1/ws/calls/{room_id}")
async def call_signaling_endpoint(websocket: WebSocket, room_id: str):
    """
    Call signaling WebSocket endpoint.

    Auth Methods:
    1. Authorization: Bearer <JWT>
    2. X-User-Id: <user_id> (fallback/tests)

    Client -> server:
    - {"type": "signal", "signal": {"kind": "offer|answer|candidate", ...}}
    - {"type": "ping"}

    Server -> client:
    - connected (welcome, with current participants)
    - presence (full participant set on every join/leave)
    - signal (stamped with the sender's authenticated identity)
    - pong, error
    """

    await websocket.accept()
    request_id = websocket.headers.get("X-Request-Id") or str(uuid4())
    connection_id = str(uuid4())

    origin = websocket.headers.get("origin")
    allowed = [o.strip() for o in settings.WS_ALLOWED_ORIGINS.split(",") if o.strip()]
    if allowed and allowed != ["*"] and (not origin or origin not in allowed):
        log_event("info", "ws.origin_blocked", request_id=request_id, room_id=room_id, event_type="ws.origin_blocked", extra={"origin": origin, "connection_id": connection_id})
        await _reject_and_close(websocket, request_id, "ws_limit", "Origin not allowed")
        return

    user_id = await _authenticate_websocket(websocket)
    if not user_id:
        log_event("info", "ws.unauthorized", request_id=request_id, room_id=room_id, event_type="ws.unauthorized", extra={"connection_id": connection_id})
        await _reject_and_close(websocket, request_id, "unauthorized", "Unauthorized: missing or invalid authentication")
        return

    try:
        await run_in_threadpool(require_call_participant, user_id, room_id)
    except AppError as e:
        log_event("info", f"ws.{e.code}", request_id=request_id, account_id=user_id, room_id=room_id, event_type=f"ws.{e.code}", extra={"connection_id": connection_id})
        await _reject_and_close(websocket, request_id, e.code, e.message)
        return

    if await hub.get_room_size(room_id) >= settings.WS_MAX_SOCKETS_PER_ROOM:
        log_event("warning", "ws.limit.room", request_id=request_id, account_id=user_id, room_id=room_id, event_type="ws.limit.room", extra={"connection_id": connection_id, "cap": settings.WS_MAX_SOCKETS_PER_ROOM})
        await _reject_and_close(websocket, request_id, "ws_limit", "Room socket limit exceeded")
        return

    await hub.register(room_id, websocket, user_id)
    log_event("info", "ws.connected", request_id=request_id, account_id=user_id, room_id=room_id, event_type="ws.connected", extra={"connection_id": connection_id})

    try:
        await websocket.send_json({
            "type": "connected",
            "room_id": room_id,
            "user_id": user_id,
            "participants": await hub.participants(room_id),
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
            "connection_id": connection_id,
        })
        await hub.broadcast_presence(room_id)

        while True:
            raw_message = await websocket.receive_text()
            if len(raw_message.encode("utf-8")) > settings.WS_MAX_MESSAGE_BYTES:
                log_event("info", "ws.payload_too_large", request_id=request_id, account_id=user_id, room_id=room_id, event_type="ws.payload_too_large", extra={"connection_id": connection_id})
                await _reject_and_close(websocket, request_id, "payload_too_large", "WS message too large")
                break
            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError as e:
                log_event("debug", "ws.invalid_json", request_id=request_id, account_id=user_id, room_id=room_id, event_type="ws.invalid_json", extra={"error": str(e), "connection_id": connection_id})
                await _send_error(websocket, request_id, "invalid_json", "Message is not valid JSON")
                continue
            if not isinstance(data, dict):
                await _send_error(websocket, request_id, "invalid_message", "Message must be an object")
                continue

            msg_type = data.get("type")
            if msg_type == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "ts": datetime.now(timezone.utc).isoformat(),
                    "request_id": request_id,
                })
            elif msg_type == "signal":
                signal = data.get("signal")
                if not isinstance(signal, dict) or signal.get("kind") not in _SIGNAL_KINDS:
                    await _send_error(websocket, request_id, "invalid_signal", "Unknown signal kind")
                    continue
                # Client-supplied sender ids are never trusted
                await hub.broadcast(room_id, {
                    "type": "signal",
                    "room_id": room_id,
                    "sender_id": user_id,
                    "signal": signal,
                })
            else:
                await _send_error(websocket, request_id, "invalid_message", f"Unsupported message type: {msg_type}")

    except WebSocketDisconnect:
        log_event("info", "ws.disconnected", request_id=request_id, account_id=user_id, room_id=room_id, event_type="ws.disconnected", extra={"connection_id": connection_id})
    except Exception as e:
        log_event("error", "ws.loop_error", request_id=request_id, account_id=user_id, room_id=room_id, event_type="ws.loop_error", extra={"error": str(e), "connection_id": connection_id})
    finally:
        await hub.unregister(room_id, websocket)
        await hub.broadcast_presence(room_id)


async def _authenticate_websocket(websocket: WebSocket) -> Optional[str]:
    """
    Authenticate WebSocket connection.

    Returns:
        user_id if authenticated, None otherwise
    """
    try:
        return authenticate_headers(websocket.headers)
    except AuthenticationError as e:
        logger.debug(f"[WS] JWT validation failed: {e}")
        return None


async def _send_error(websocket: WebSocket, request_id: str, code: str, message: str):
    await websocket.send_json({
        "type": "error",
        "code": code,
        "message": message,
        "request_id": request_id,
    })


async def _reject_and_close(websocket: WebSocket, request_id: str, code: str, message: str):
    try:
        await _send_error(websocket, request_id, code, message)
    except Exception:
        logger.debug("[WS] error frame not delivered")
    try:
        await websocket.close(code=1008, reason=message)
    except Exception:
        logger.debug("[WS] close after reject failed")
