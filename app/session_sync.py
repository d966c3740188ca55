import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .context import SessionContext, SessionStore


logger = logging.getLogger("uvicorn.error")


class SharedSessionPoller:
    """Re-reads shared sessions from storage while nothing local is pending.

    Last writer still wins; skipping busy or dirty sessions is the only guard.
    """

    def __init__(
        self,
        store: SessionStore,
        interval_s: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.interval_s = interval_s
        self.sleep = sleep

    async def poll_once(self, ctx: SessionContext) -> bool:
        session = ctx.session
        if not session.is_shared or not session.group_id:
            return False
        if ctx.is_generating or ctx.unsaved_changes:
            return False
        fetched = await self.store.db.get_session(session.id, ctx.partition_key)
        if fetched is None:
            return False
        # State may have changed while the read was in flight.
        if ctx.is_generating or ctx.unsaved_changes:
            return False
        if fetched.model_dump(include={"messages"}) == session.model_dump(include={"messages"}):
            return False
        ctx.session = fetched
        logger.info("Refreshed shared session %s (%s messages)", session.id, len(fetched.messages))
        return True

    async def poll_all(self) -> int:
        refreshed = 0
        for ctx in list(self.store.contexts.values()):
            try:
                if await self.poll_once(ctx):
                    refreshed += 1
            except Exception as exc:
                logger.warning("Polling shared session %s failed: %s", ctx.session_id, exc)
        return refreshed

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        while stop_event is None or not stop_event.is_set():
            await self.poll_all()
            await self.sleep(self.interval_s)
