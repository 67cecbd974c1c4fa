"""
WebSocket management for real-time node updates
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from nodegen.models.models import Node

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manage WebSocket connections watching all nodes or a single node."""

    def __init__(self):
        self.node_connections: Dict[str, Set[WebSocket]] = {}
        self.global_connections: Set[WebSocket] = set()
        self._queue: Optional[asyncio.Queue] = None
        self._broadcaster: Optional[asyncio.Task] = None

    def start(self):
        """Start the single broadcaster task that sends queued updates in order."""
        if self._broadcaster is None:
            self._queue = asyncio.Queue()
            self._broadcaster = asyncio.create_task(self._broadcast_updates(), name="node-updates-broadcast")
            logger.info("📡 Node update broadcaster started")

    async def stop(self, timeout: float = 5.0):
        """Send what is already queued, then stop the broadcaster."""
        if self._broadcaster is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ {self._queue.qsize()} node updates dropped on shutdown")
        self._broadcaster.cancel()
        try:
            await self._broadcaster
        except asyncio.CancelledError:
            pass
        self._broadcaster = None
        self._queue = None
        logger.info("📡 Node update broadcaster stopped")

    async def _broadcast_updates(self):
        while True:
            event, node = await self._queue.get()
            try:
                await self.send_node_update(event, node)
            except Exception:
                logger.exception(f"❌ Failed to broadcast {event} for node {node.id}")
            finally:
                self._queue.task_done()

    async def connect(self, websocket: WebSocket, node_id: Optional[str] = None):
        """Connect a WebSocket client."""
        await websocket.accept()

        if node_id:
            self.node_connections.setdefault(node_id, set()).add(websocket)
            logger.info(f"✅ WebSocket connected for node {node_id}")
        else:
            self.global_connections.add(websocket)
            logger.info("✅ Global WebSocket connected")

    def disconnect(self, websocket: WebSocket, node_id: Optional[str] = None):
        """Disconnect a WebSocket client."""
        if node_id and node_id in self.node_connections:
            self.node_connections[node_id].discard(websocket)
            if not self.node_connections[node_id]:
                del self.node_connections[node_id]
            logger.info(f"❌ WebSocket disconnected for node {node_id}")
        else:
            self.global_connections.discard(websocket)
            logger.info("❌ Global WebSocket disconnected")

    async def _send(self, connections: Set[WebSocket], message: dict, node_id: Optional[str] = None):
        disconnected = set()
        for connection in list(connections):
            try:
                await connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning(f"⚠️ Failed to send to WebSocket: {e}")
                disconnected.add(connection)

        for conn in disconnected:
            self.disconnect(conn, node_id)

    async def send_node_update(self, event: str, node: Node):
        """Send an update to the node's watchers and to every global connection."""
        message = {
            "event": event,
            "node_id": node.id,
            "node": node.model_dump(mode="json"),
        }
        if node.id in self.node_connections:
            await self._send(self.node_connections[node.id], message, node.id)
        await self._send(self.global_connections, message)

    def listener(self, event: str, node: Node):
        """Graph listener: queue the update for the broadcaster."""
        if self._queue is None:
            return
        if not self.global_connections and node.id not in self.node_connections:
            return
        self._queue.put_nowait((event, node))
