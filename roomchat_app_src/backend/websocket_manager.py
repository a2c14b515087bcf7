import logging
from typing import Dict, Optional, Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)

class ConnectionManager:
    """
    Room membership registry and fan-out.

    A connection belongs to at most one room. Rooms are just keys here: a room
    appears on first join and disappears when its last connection leaves.
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.room_of: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def join(self, websocket: WebSocket, room_code: str):
        previous = self.room_of.get(websocket)
        if previous is not None and previous != room_code:
            self._leave(websocket, previous)
        self.rooms.setdefault(room_code, set()).add(websocket)
        self.room_of[websocket] = room_code
        self.active_connections.add(websocket)
        logger.info("Connection joined room %s (%d members)", room_code, len(self.rooms[room_code]))

    def _leave(self, websocket: WebSocket, room_code: str):
        members = self.rooms.get(room_code)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room_code]

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)
        room_code = self.room_of.pop(websocket, None)
        if room_code is not None:
            self._leave(websocket, room_code)
            logger.info("Connection left room %s", room_code)

    def members(self, room_code: str) -> Set[WebSocket]:
        return set(self.rooms.get(room_code, ()))

    def room_for(self, websocket: WebSocket) -> Optional[str]:
        return self.room_of.get(websocket)

    async def send_personal(self, websocket: WebSocket, payload: dict):
        try:
            await websocket.send_json(payload)
        except Exception as e:
            logger.warning("Dropping connection after failed send: %s", e)
            self.disconnect(websocket)

    async def broadcast(self, room_code: str, payload: dict, exclude: Optional[WebSocket] = None):
        """Send to every member of a room; dead connections are pruned."""
        for ws in self.members(room_code):
            if ws is exclude:
                continue
            await self.send_personal(ws, payload)
