import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Set

from .db import Database


ALL_SESSIONS = None


class EventBus:
    """Session-scoped event fan-out; every event is persisted before it is delivered.

    Listeners registered under ``ALL_SESSIONS`` receive events from every session.
    """

    def __init__(self, db: Database):
        self.db = db
        self.listeners: Dict[Optional[str], Set[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def emit(self, session_id: str, event_type: str, payload: dict) -> dict:
        async with self.lock:
            record = await self.db.add_event(session_id, event_type, {"session_id": session_id, **(payload or {})})
            targets = [*self.listeners.get(session_id, ()), *self.listeners.get(ALL_SESSIONS, ())]
            for queue in targets:
                queue.put_nowait(record)
        return record

    @asynccontextmanager
    async def listen(self, session_id: Optional[str] = ALL_SESSIONS) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.listeners.setdefault(session_id, set()).add(queue)
        try:
            yield queue
        finally:
            async with self.lock:
                queues = self.listeners.get(session_id)
                if queues is not None:
                    queues.discard(queue)
                    if not queues:
                        del self.listeners[session_id]

    def listener_count(self, session_id: Optional[str] = ALL_SESSIONS) -> int:
        return len(self.listeners.get(session_id, ()))
