"""
providerhub/realtime/hub.py
In-memory relay hub for call signaling.

Single instance relays signal messages to every WebSocket in a call room and
tracks which identities are present. Safe for concurrent use within one
event loop, prunes dead sockets on broadcast.
"""

from typing import Dict, List, Set, Tuple
from fastapi import WebSocket
import asyncio
import logging

logger = logging.getLogger("providerhub")


class CallRoomHub:
    """
    Room-per-call broadcast hub.

    Maps room_id -> Set[WebSocket] and WebSocket -> (room_id, user_id). One
    identity may hold several sockets (tabs); presence lists identities.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._connections: Dict[WebSocket, Tuple[str, str]] = {}
        self._lock = asyncio.Lock()

    async def register(self, room_id: str, websocket: WebSocket, user_id: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room_id, set()).add(websocket)
            self._connections[websocket] = (room_id, user_id)
            logger.debug(f"[HUB] Registered socket for room {room_id}. Total: {len(self._rooms[room_id])}")

    async def unregister(self, room_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._discard(room_id, websocket)

    def _discard(self, room_id: str, websocket: WebSocket) -> None:
        # caller holds the lock
        self._connections.pop(websocket, None)
        sockets = self._rooms.get(room_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._rooms[room_id]
            logger.debug(f"[HUB] Cleaned up empty room {room_id}")

    async def participants(self, room_id: str) -> List[str]:
        """Distinct identities present in a room, sorted."""
        async with self._lock:
            return self._participants(room_id)

    def _participants(self, room_id: str) -> List[str]:
        return sorted({
            self._connections[ws][1]
            for ws in self._rooms.get(room_id, set())
            if ws in self._connections
        })

    async def broadcast(self, room_id: str, message: dict) -> None:
        """
        Send message to every socket in the room.

        Sockets that fail to receive are pruned; if pruning changes the set
        of identities present, a fresh presence snapshot follows.
        """
        async with self._lock:
            sockets = list(self._rooms.get(room_id, set()))
        if not sockets:
            return

        dead = []
        for ws in sockets:
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.debug(f"[HUB] Failed to send to socket: {e}")
                dead.append(ws)

        if dead:
            async with self._lock:
                before = self._participants(room_id)
                for ws in dead:
                    self._discard(room_id, ws)
                after = self._participants(room_id)
            logger.debug(f"[HUB] Pruned {len(dead)} dead sockets from room {room_id}")
            if before != after:
                await self.broadcast_presence(room_id)

    async def broadcast_presence(self, room_id: str) -> None:
        participants = await self.participants(room_id)
        await self.broadcast(room_id, {"type": "presence", "room_id": room_id, "participants": participants})

    async def get_room_size(self, room_id: str) -> int:
        async with self._lock:
            return len(self._rooms.get(room_id, set()))


# Global singleton hub instance
hub = CallRoomHub()
