import asyncio
import logging
import uuid
from typing import Dict, Iterable, Set

from fastapi import WebSocket

from .auth import Identity


logger = logging.getLogger("dispatch.ws")


class Connection:
    """One accepted socket plus the identity it authenticated as."""

    def __init__(self, ws: WebSocket, identity: Identity) -> None:
        self.id = uuid.uuid4().hex
        self.ws = ws
        self.identity = identity

    async def send(self, event: str, data) -> None:
        await self.ws.send_json({"event": event, "data": data})


class ConnectionManager:
    """Connections addressable by id and by room (one room per user id)."""

    def __init__(self) -> None:
        self._conns: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket, identity: Identity) -> Connection:
        await ws.accept()
        conn = Connection(ws, identity)
        async with self._lock:
            self._conns[conn.id] = conn
            self._rooms.setdefault(identity.id, set()).add(conn.id)
        return conn

    async def disconnect(self, conn: Connection) -> None:
        async with self._lock:
            self._drop(conn.id)

    def _drop(self, connection_id: str) -> None:
        self._conns.pop(connection_id, None)
        for room in [r for r, members in self._rooms.items() if connection_id in members]:
            members = self._rooms[room]
            members.discard(connection_id)
            if not members:
                self._rooms.pop(room, None)

    async def join(self, conn: Connection, room: str) -> None:
        async with self._lock:
            if conn.id in self._conns:
                self._rooms.setdefault(room, set()).add(conn.id)

    async def leave(self, conn: Connection, room: str) -> None:
        async with self._lock:
            members = self._rooms.get(room)
            if members:
                members.discard(conn.id)
                if not members:
                    self._rooms.pop(room, None)

    async def _deliver(self, connection_ids: Iterable[str], event: str, data) -> int:
        async with self._lock:
            conns = [self._conns[cid] for cid in dict.fromkeys(connection_ids) if cid in self._conns]
        to_remove = []
        for conn in conns:
            try:
                await conn.send(event, data)
            except Exception:
                logger.warning("dropping connection %s after failed %s send", conn.id, event)
                to_remove.append(conn.id)
        if to_remove:
            async with self._lock:
                for cid in to_remove:
                    self._drop(cid)
        return len(conns) - len(to_remove)

    async def send(self, connection_id: str, event: str, data) -> bool:
        return await self._deliver([connection_id], event, data) == 1

    async def send_many(self, connection_ids: Iterable[str], event: str, data) -> int:
        return await self._deliver(connection_ids, event, data)

    async def emit_to_room(self, room: str, event: str, data, exclude: Iterable[str] = ()) -> int:
        skip = set(exclude)
        async with self._lock:
            members = [cid for cid in self._rooms.get(room, set()) if cid not in skip]
        return await self._deliver(members, event, data)

    async def broadcast(self, event: str, data, exclude: Iterable[str] = ()) -> int:
        skip = set(exclude)
        async with self._lock:
            members = [cid for cid in self._conns if cid not in skip]
        return await self._deliver(members, event, data)

    def room_members(self, room: str) -> Set[str]:
        return set(self._rooms.get(room, set()))

    def __len__(self) -> int:
        return len(self._conns)
