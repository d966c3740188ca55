import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .db import Database
from .schemas import ChatSession, Message


logger = logging.getLogger("uvicorn.error")


@dataclass
class SessionContext:
    """Live state of one open session, passed explicitly into every engine call."""

    session: ChatSession
    partition_key: str
    selected_models: List[str] = field(default_factory=list)
    selected_tool_ids: Set[str] = field(default_factory=set)
    guided_instruction: Optional[str] = None
    input_text: str = ""
    unsaved_changes: bool = False
    generation_tasks: Dict[Tuple[str, str], asyncio.Task] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def messages(self) -> List[Message]:
        return self.session.messages

    @property
    def is_generating(self) -> bool:
        if any(not t.done() for t in self.generation_tasks.values()):
            return True
        return any(
            not resp.is_terminal for msg in self.session.messages for resp in msg.responses.values()
        )

    @property
    def is_idle(self) -> bool:
        return not self.is_generating and not self.unsaved_changes

    def find_message(self, message_id: str) -> Tuple[int, Optional[Message]]:
        for idx, msg in enumerate(self.session.messages):
            if msg.id == message_id:
                return idx, msg
        return -1, None

    def append(self, message: Message) -> Message:
        self.session.messages.append(message)
        self.unsaved_changes = True
        return message

    def clear_guidance(self) -> None:
        self.guided_instruction = None
        self.input_text = ""


class SessionStore:
    """Keeps open sessions in memory and writes them through to the database."""

    def __init__(self, db: Database, default_models: Optional[List[str]] = None):
        self.db = db
        self.default_models = list(default_models or [])
        self.contexts: Dict[str, SessionContext] = {}

    def open(self, session: ChatSession, partition_key: str) -> SessionContext:
        ctx = self.contexts.get(session.id)
        if ctx is None:
            ctx = SessionContext(
                session=session,
                partition_key=partition_key,
                selected_models=list(self.default_models),
            )
            self.contexts[session.id] = ctx
        return ctx

    async def get(self, session_id: str, partition_key: str) -> Optional[SessionContext]:
        ctx = self.contexts.get(session_id)
        if ctx is not None:
            return ctx
        session = await self.db.get_session(session_id, partition_key)
        if session is None:
            return None
        return self.open(session, partition_key)

    async def save(self, ctx: SessionContext) -> None:
        await self.db.save_session(ctx.session, ctx.partition_key)
        ctx.unsaved_changes = False

    async def autosave(self, ctx: SessionContext) -> bool:
        """Persist only once every response has settled."""
        if ctx.is_generating or not ctx.unsaved_changes:
            return False
        await self.save(ctx)
        return True

    async def delete(self, session_id: str, partition_key: str) -> None:
        ctx = self.contexts.pop(session_id, None)
        if ctx is not None:
            for task in ctx.generation_tasks.values():
                task.cancel()
        logger.info("Deleting session %s from partition %s", session_id, partition_key)
        await self.db.delete_session(session_id, partition_key)
