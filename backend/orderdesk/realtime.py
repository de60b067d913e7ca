import asyncio
import json
from typing import Any, Callable, Dict, List, Set

from fastapi import WebSocket

from .logs import log_event


class ConnectionManager:
    def __init__(self):
        self.active: List[WebSocket] = []
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active:
            self.active.remove(websocket)

    async def broadcast(self, message: Dict[str, Any]):
        for ws in list(self.active):
            try:
                await ws.send_text(json.dumps(message, default=str))
            except Exception:
                self.disconnect(ws)

    def notifier(self) -> Callable[[Dict[str, Any]], None]:
        """Callable that schedules a broadcast without waiting for it."""

        def _notify(message: Dict[str, Any]) -> None:
            try:
                task = asyncio.get_running_loop().create_task(self.broadcast(message))
            except RuntimeError:
                log_event("realtime", {"dropped": message.get("type"), "reason": "no_event_loop"})
                return
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return _notify
