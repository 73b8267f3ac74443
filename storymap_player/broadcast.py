"""
Playback status broadcast and remote control over WebSocket.

Viewers connect to follow a presenter's playback; every status change is
pushed to all of them. Clients may also send control commands.

Commands (JSON):
    {"type": "play", "index": 2}        index optional, omitted = resume
    {"type": "pause"} / {"type": "stop"} / {"type": "continue"}
    {"type": "play_segment", "segment_id": "..."}
    {"type": "play_routes", "segment_id": "..."}
    {"type": "get_state"}
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from websockets.asyncio.server import serve as ws_serve
from websockets.exceptions import ConnectionClosed

from .timeline.playback_controller import PlaybackController

logger = logging.getLogger(__name__)


class StatusBroadcaster:
    """WebSocket server mirroring a PlaybackController."""

    def __init__(self, controller: PlaybackController, host: str = "0.0.0.0", port: int = 8767):
        self.controller = controller
        self.host = host
        self.port = port
        self._clients: Set = set()
        self._server = None
        self._tasks: Set[asyncio.Task] = set()

        controller.set_callbacks(on_status_change=self._on_status_change)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self):
        self._server = await ws_serve(self._handle_client, self.host, self.port, max_size=65_536)
        logger.info(f"Status WebSocket: ws://{self.host}:{self.port}")

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for task in list(self._tasks):
            task.cancel()
        self._clients.clear()

    def state_message(self) -> Dict[str, Any]:
        return {"type": "playback_state", **self.controller.get_status()}

    async def _handle_client(self, websocket):
        """Handle one viewer connection."""
        self._clients.add(websocket)
        logger.info(f"Viewer connected. Total: {len(self._clients)}")

        try:
            await websocket.send(json.dumps(self.state_message()))
            async for message in websocket:
                reply = await self.handle_message(message)
                if reply is not None:
                    await websocket.send(json.dumps(reply))
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)
            logger.info(f"Viewer disconnected. Total: {len(self._clients)}")

    async def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """
        Apply one control message.

        Returns:
            Reply to send back to the sender, or None
        """
        try:
            data = json.loads(message)
        except (TypeError, ValueError):
            return {"type": "error", "message": "Invalid JSON"}
        if not isinstance(data, dict):
            return {"type": "error", "message": "Expected a JSON object"}

        msg_type = data.get("type")
        controller = self.controller

        if msg_type == "get_state":
            return self.state_message()

        elif msg_type == "play":
            index = data.get("index")
            if index is not None and (not isinstance(index, int) or isinstance(index, bool)):
                return {"type": "error", "message": "index must be an integer"}
            ok = controller.play_from_index(index)
            return {"type": "ack", "command": msg_type, "ok": ok}

        elif msg_type == "pause":
            return {"type": "ack", "command": msg_type, "ok": controller.pause()}

        elif msg_type == "stop":
            controller.stop()
            return {"type": "ack", "command": msg_type, "ok": True}

        elif msg_type == "continue":
            return {"type": "ack", "command": msg_type, "ok": controller.continue_after_user_action()}

        elif msg_type in ("play_segment", "play_routes"):
            segment_id = data.get("segment_id")
            if not isinstance(segment_id, str) or not segment_id:
                return {"type": "error", "message": "segment_id is required"}
            if msg_type == "play_segment":
                ok = controller.play_single_segment(segment_id)
            else:
                ok = controller.play_route_animation_only(segment_id)
            return {"type": "ack", "command": msg_type, "ok": ok}

        return {"type": "error", "message": f"Unknown message type: {msg_type}"}

    async def broadcast(self, payload: Dict[str, Any]):
        """Send a message to every viewer, dropping dead connections."""
        message = json.dumps(payload)
        dead_clients = set()
        for client in list(self._clients):
            try:
                await client.send(message)
            except Exception:
                dead_clients.add(client)
        self._clients -= dead_clients

    def _on_status_change(self, status: Dict[str, Any]):
        if not self._clients:
            return
        task = asyncio.create_task(self.broadcast({"type": "playback_state", **status}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
