"""
WebSocket fan-out for new-fragment events.

Delivery is best effort: no replay and no backlog. Clients that connect late
catch up through the fragments listing endpoint.
"""

import os
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

from app.services.fragment_store import FragmentStore, Stage
from app.models.schemas import FragmentEvent


logger = logging.getLogger("orchestrator")


class FragmentNotifier:
    """Tracks connected listeners and pushes ``newFragment`` events to them."""

    def __init__(self, store: FragmentStore, send_timeout: float = 2.0):
        self.store = store
        self.send_timeout = send_timeout
        self._listeners: Dict[WebSocket, Optional[str]] = {}
        self._lock = asyncio.Lock()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def connect(self, websocket: WebSocket, video_id: Optional[str] = None) -> None:
        """Register an accepted connection, optionally filtered to one source."""
        async with self._lock:
            self._listeners[websocket] = video_id

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._listeners.pop(websocket, None)

    async def _send(self, ws: WebSocket, event: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(ws.send_json(event), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Dropping websocket listener: send took longer than {self.send_timeout}s")
        except Exception as e:
            logger.debug(f"Dropping websocket listener: {e}")
        return False

    async def broadcast(self, event: Dict[str, Any], video_id: Optional[str] = None) -> int:
        """
        Send ``event`` to every matching listener concurrently.

        Listeners whose send fails or exceeds ``send_timeout`` are dropped; a
        broadcast never takes longer than ``send_timeout``.

        Returns:
            Number of listeners the event was delivered to
        """
        async with self._lock:
            targets = [
                ws for ws, wanted in self._listeners.items()
                if wanted is None or video_id is None or wanted == video_id
            ]
        if not targets:
            return 0

        results = await asyncio.gather(*(self._send(ws, event) for ws in targets))
        dead = [ws for ws, ok in zip(targets, results) if not ok]

        if dead:
            async with self._lock:
                for ws in dead:
                    self._listeners.pop(ws, None)
        return len(targets) - len(dead)

    async def fragment_ready(self, video_id: str, language: str, index: int) -> int:
        """Announce a synthesized fragment."""
        path = self.store.existing_path(video_id, Stage.SYNTHESIZED, index, language)
        filename = os.path.basename(path) if path else f"fragment-{index}.{self.store.extension_for(Stage.SYNTHESIZED)}"
        event = FragmentEvent(videoId=video_id, language=language, fragment=filename)
        return await self.broadcast(event.model_dump(), video_id=video_id)
