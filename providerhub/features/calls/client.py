"""
Production wiring for a call participant: local devices via aiortc and
signaling through the realtime hub's WebSocket endpoint.
"""
from typing import Optional

from providerhub.core.config import settings
from providerhub.features.calls.media import DeviceMediaSource, aiortc_peer_factory
from providerhub.features.calls.session import CallSessionController, StatusCallback
from providerhub.features.calls.signaling import WebSocketSignalingTransport


def create_call_session(
    room_id: str,
    identity: str,
    *,
    token: Optional[str] = None,
    signaling_url: Optional[str] = None,
    media_source: Optional[DeviceMediaSource] = None,
    on_status: Optional[StatusCallback] = None,
) -> CallSessionController:
    """
    Build a controller for one side of the call in `room_id`.

    Authenticates with a bearer token when given, otherwise with the
    X-User-Id header (only accepted when the hub allows header fallback).
    Nothing connects until `start()` is awaited.
    """
    headers = {"Authorization": f"Bearer {token}"} if token else {"X-User-Id": identity}
    transport = WebSocketSignalingTransport(
        signaling_url or settings.CALL_SIGNALING_URL,
        headers=headers,
        max_size=settings.WS_MAX_MESSAGE_BYTES,
    )
    return CallSessionController(
        room_id,
        identity,
        transport,
        media_source=media_source or DeviceMediaSource(),
        peer_factory=aiortc_peer_factory,
        on_status=on_status,
    )
