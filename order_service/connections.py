"""Realtime connections: who is reachable, and how to reach them."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Maps ephemeral connection ids to the user that registered on them."""

    def __init__(self):
        self._users: Dict[str, str] = {}

    def register(self, connection_id: str, user_id: str) -> None:
        if not user_id:
            return
        self._users[connection_id] = str(user_id)
        logger.info("User %s registered on connection %s (%d connected)", user_id, connection_id, len(self._users))

    def unregister(self, connection_id: str) -> None:
        if self._users.pop(connection_id, None) is not None:
            logger.info("Connection %s closed (%d connected)", connection_id, len(self._users))

    def user_for(self, connection_id: str) -> Optional[str]:
        return self._users.get(connection_id)

    def connections_for(self, user_id: str) -> List[str]:
        return [cid for cid, uid in self._users.items() if uid == str(user_id)]

    def connected_user_ids(self) -> List[str]:
        """Distinct user ids, in registration order."""
        return list(dict.fromkeys(self._users.values()))

    def connection_ids(self) -> List[str]:
        return list(self._users)

    def __len__(self) -> int:
        return len(self._users)


class SocketBroadcaster:
    """Delivers ``{"event", "data"}`` messages to live websocket connections.

    Delivery is fire-and-forget: a failed send is logged and dropped.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self._sockets: Dict[str, Any] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def attach(self, connection_id: str, websocket) -> None:
        self._sockets[connection_id] = websocket

    def detach(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)
        self.registry.unregister(connection_id)

    async def send(self, connection_id: str, event: str, data: Any) -> bool:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception:
            logger.warning("Failed to deliver %s to connection %s", event, connection_id, exc_info=True)
            return False
        return True

    async def broadcast(self, event: str, data: Any) -> None:
        for connection_id in list(self._sockets):
            await self.send(connection_id, event, data)

    def emit(self, event: str, data: Any) -> None:
        """Schedule a broadcast from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No event loop bound; dropping %s", event)
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(event, data), loop)
