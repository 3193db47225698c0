"""
Signaling channel for call negotiation.

A SignalingChannel is one peer's view of the per-room channel
`video-call:{room_id}`. It sends offer/answer/candidate messages stamped
with the local identity, discards its own echoes and reports presence as
the full set of distinct participant identities.

Transports move JSON messages between the channel and the realtime hub:
- WebSocketSignalingTransport: the hub's /v1/ws/calls/{room_id} endpoint
- LocalSignalingBus: in-process rooms (tests, local tooling)
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from providerhub.models.call import IceCandidate, Presence, SessionDescription, SignalKind, SignalMessage

logger = logging.getLogger("providerhub")

CHANNEL_PREFIX = "video-call:"

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]
SignalHandler = Callable[[SignalMessage], Awaitable[None]]
PresenceHandler = Callable[[Presence], Awaitable[None]]


def channel_name(room_id: str) -> str:
    return f"{CHANNEL_PREFIX}{room_id}"


def room_from_channel(name: str) -> str:
    if not name.startswith(CHANNEL_PREFIX):
        raise ValueError(f"Not a call channel: {name}")
    return name[len(CHANNEL_PREFIX):]


class SignalingTransport(Protocol):
    """Delivers raw hub messages for one channel, in order."""

    async def connect(self, channel: str, on_message: MessageHandler) -> None:
        ...

    async def send(self, message: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class SignalingChannel:
    def __init__(self, room_id: str, identity: str, transport: SignalingTransport):
        self.room_id = room_id
        self.identity = identity
        self.name = channel_name(room_id)
        self.transport = transport
        self._on_signal: Optional[SignalHandler] = None
        self._on_presence: Optional[PresenceHandler] = None
        self._participants: Optional[FrozenSet[str]] = None
        self._joined = False
        self._closed = False

    @property
    def participants(self) -> FrozenSet[str]:
        return self._participants or frozenset()

    async def join(self, on_signal: SignalHandler, on_presence: PresenceHandler) -> None:
        if self._joined:
            raise RuntimeError(f"Already joined {self.name}")
        self._on_signal = on_signal
        self._on_presence = on_presence
        self._joined = True
        await self.transport.connect(self.name, self._dispatch)
        logger.debug(f"[signaling] {self.identity} joined {self.name}")

    async def leave(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._joined:
            await self.transport.close()
        logger.debug(f"[signaling] {self.identity} left {self.name}")

    async def send_offer(self, description: SessionDescription) -> None:
        await self._send(SignalKind.OFFER, description.to_dict())

    async def send_answer(self, description: SessionDescription) -> None:
        await self._send(SignalKind.ANSWER, description.to_dict())

    async def send_candidate(self, candidate: IceCandidate) -> None:
        await self._send(SignalKind.CANDIDATE, candidate.to_dict())

    async def _send(self, kind: SignalKind, payload: Dict[str, Any]) -> None:
        if self._closed:
            return
        await self.transport.send({
            "type": "signal",
            "sender_id": self.identity,
            "signal": {"kind": kind.value, **payload},
        })

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        if self._closed or not isinstance(message, dict):
            return

        msg_type = message.get("type")
        if msg_type == "presence":
            participants = frozenset(str(p) for p in message.get("participants") or [])
            if participants == self._participants:
                return
            self._participants = participants
            if self._on_presence:
                await self._on_presence(Presence(room_id=self.room_id, participants=participants))
        elif msg_type == "signal":
            sender_id = message.get("sender_id")
            if not sender_id or sender_id == self.identity:
                return
            signal = dict(message.get("signal") or {})
            try:
                kind = SignalKind(signal.pop("kind", None))
            except ValueError:
                logger.debug(f"[signaling] unknown signal kind on {self.name}")
                return
            if self._on_signal:
                await self._on_signal(SignalMessage(kind=kind, sender_id=sender_id, payload=signal))
        elif msg_type == "error":
            logger.warning(
                "[signaling] hub error",
                extra={"room_id": self.room_id, "error_code": message.get("code")},
            )


class WebSocketSignalingTransport:
    """
    Connects a SignalingChannel to the realtime hub over a WebSocket.

    Incoming frames are processed one at a time by a reader task, so the
    channel sees them in arrival order.
    """

    def __init__(self, base_url: str, headers: Optional[Dict[str, str]] = None, max_size: int = 2 ** 16):
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.max_size = max_size
        self._ws: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()

    def url_for(self, channel: str) -> str:
        return f"{self.base_url}/v1/ws/calls/{room_from_channel(channel)}"

    async def connect(self, channel: str, on_message: MessageHandler) -> None:
        self._ws = await websockets.connect(
            self.url_for(channel),
            additional_headers=self.headers,
            ping_interval=20,
            ping_timeout=10,
            max_size=self.max_size,
        )
        self._reader = asyncio.create_task(self._read_loop(on_message))

    async def _read_loop(self, on_message: MessageHandler) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except (json.JSONDecodeError, TypeError):
                    logger.warning("[signaling] non-JSON frame dropped")
                    continue
                await on_message(message)
        except ConnectionClosed:
            logger.info("[signaling] hub connection closed")

    async def send(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("Signaling transport not connected")
        async with self._send_lock:
            await self._ws.send(json.dumps(message))

    async def close(self) -> None:
        if self._reader and self._reader is not asyncio.current_task():
            self._reader.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class LocalSignalingBus:
    """
    In-process stand-in for the realtime hub.

    Mirrors the hub's behavior: senders are stamped by the bus, signals are
    relayed to every member including the sender, and presence snapshots
    are pushed on join and leave.
    """

    def __init__(self):
        self._rooms: Dict[str, List["LocalSignalingTransport"]] = {}

    def transport(self, identity: str) -> "LocalSignalingTransport":
        return LocalSignalingTransport(self, identity)

    def participants(self, channel: str) -> List[str]:
        return sorted({t.identity for t in self._rooms.get(channel, [])})

    def _join(self, channel: str, transport: "LocalSignalingTransport") -> None:
        self._rooms.setdefault(channel, []).append(transport)
        self._publish_presence(channel)

    def _leave(self, channel: str, transport: "LocalSignalingTransport") -> None:
        members = self._rooms.get(channel, [])
        if transport in members:
            members.remove(transport)
        if not members:
            self._rooms.pop(channel, None)
        else:
            self._publish_presence(channel)

    def _publish_presence(self, channel: str) -> None:
        self._fan_out(channel, {
            "type": "presence",
            "room_id": room_from_channel(channel),
            "participants": self.participants(channel),
        })

    def _relay(self, channel: str, sender: "LocalSignalingTransport", message: Dict[str, Any]) -> None:
        self._fan_out(channel, {**message, "sender_id": sender.identity})

    def _fan_out(self, channel: str, message: Dict[str, Any]) -> None:
        for member in list(self._rooms.get(channel, [])):
            member._inbox.put_nowait(message)


class LocalSignalingTransport:
    def __init__(self, bus: LocalSignalingBus, identity: str):
        self.bus = bus
        self.identity = identity
        self.sent: List[Dict[str, Any]] = []
        self._channel: Optional[str] = None
        self._inbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None

    async def connect(self, channel: str, on_message: MessageHandler) -> None:
        self._channel = channel
        self._pump = asyncio.create_task(self._drain(on_message))
        self.bus._join(channel, self)

    async def _drain(self, on_message: MessageHandler) -> None:
        while self._channel is not None:
            message = await self._inbox.get()
            await on_message(message)

    async def send(self, message: Dict[str, Any]) -> None:
        if self._channel is None:
            raise ConnectionError("Signaling transport not connected")
        self.sent.append(message)
        self.bus._relay(self._channel, self, message)

    async def close(self) -> None:
        if self._channel is not None:
            self.bus._leave(self._channel, self)
            self._channel = None
        if self._pump and self._pump is not asyncio.current_task():
            self._pump.cancel()


