import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from .schemas import ChatSession, DatabaseSource, Persona, Workflow

import aiosqlite


ModelT = TypeVar("ModelT", bound=BaseModel)

KIND_SESSION = "session"
KIND_WORKFLOW = "workflow"
KIND_PERSONA = "persona"
KIND_DATABASE_SOURCE = "database_source"


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class Database:
    """Document store: one JSON payload per (kind, id, partition_key)."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS documents(
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    partition_key TEXT NOT NULL,
                    payload_json TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (kind, id, partition_key)
                );
                CREATE INDEX IF NOT EXISTS idx_documents_partition
                    ON documents(kind, partition_key, updated_at);
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id, seq);
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def put_document(self, kind: str, doc_id: str, partition_key: str, payload: Dict[str, Any]) -> str:
        stamp = utc_now()
        await self.execute(
            "INSERT INTO documents(kind, id, partition_key, payload_json, created_at, updated_at) VALUES (?,?,?,?,?,?) "
            "ON CONFLICT(kind, id, partition_key) DO UPDATE SET payload_json=excluded.payload_json, "
            "updated_at=excluded.updated_at",
            (kind, doc_id, partition_key, json.dumps(payload), stamp, stamp),
        )
        return stamp

    async def get_document(self, kind: str, doc_id: str, partition_key: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone(
            "SELECT payload_json FROM documents WHERE kind=? AND id=? AND partition_key=?",
            (kind, doc_id, partition_key),
        )
        if not row:
            return None
        return json.loads(row["payload_json"] or "{}")

    async def list_documents(self, kind: str, partition_key: str, limit: int = 500) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT payload_json FROM documents WHERE kind=? AND partition_key=? ORDER BY updated_at DESC LIMIT ?",
            (kind, partition_key, limit),
        )
        return [json.loads(r["payload_json"] or "{}") for r in rows]

    async def delete_document(self, kind: str, doc_id: str, partition_key: str) -> None:
        await self.execute(
            "DELETE FROM documents WHERE kind=? AND id=? AND partition_key=?",
            (kind, doc_id, partition_key),
        )

    async def _get_model(self, model: Type[ModelT], kind: str, doc_id: str, partition_key: str) -> Optional[ModelT]:
        data = await self.get_document(kind, doc_id, partition_key)
        return model.model_validate(data) if data is not None else None

    async def _list_models(self, model: Type[ModelT], kind: str, partition_key: str) -> List[ModelT]:
        return [model.model_validate(d) for d in await self.list_documents(kind, partition_key)]

    async def save_session(self, session: ChatSession, partition_key: str) -> None:
        await self.put_document(KIND_SESSION, session.id, partition_key, session.model_dump(mode="json"))

    async def get_session(self, session_id: str, partition_key: str) -> Optional[ChatSession]:
        return await self._get_model(ChatSession, KIND_SESSION, session_id, partition_key)

    async def list_sessions(self, partition_key: str) -> List[ChatSession]:
        sessions = await self._list_models(ChatSession, KIND_SESSION, partition_key)
        return sorted(sessions, key=lambda s: s.timestamp, reverse=True)

    async def delete_session(self, session_id: str, partition_key: str) -> None:
        await self.delete_document(KIND_SESSION, session_id, partition_key)
        await self.execute("DELETE FROM events WHERE session_id=?", (session_id,))

    async def save_workflow(self, workflow: Workflow, partition_key: str) -> None:
        await self.put_document(KIND_WORKFLOW, workflow.id, partition_key, workflow.model_dump(mode="json"))

    async def get_workflow(self, workflow_id: str, partition_key: str) -> Optional[Workflow]:
        return await self._get_model(Workflow, KIND_WORKFLOW, workflow_id, partition_key)

    async def list_workflows(self, partition_key: str) -> List[Workflow]:
        return await self._list_models(Workflow, KIND_WORKFLOW, partition_key)

    async def save_persona(self, persona: Persona, partition_key: str) -> None:
        await self.put_document(KIND_PERSONA, persona.id, partition_key, persona.model_dump(mode="json"))

    async def get_persona(self, persona_id: str, partition_key: str) -> Optional[Persona]:
        return await self._get_model(Persona, KIND_PERSONA, persona_id, partition_key)

    async def list_personas(self, partition_key: str) -> List[Persona]:
        return await self._list_models(Persona, KIND_PERSONA, partition_key)

    async def save_database_source(self, source: DatabaseSource, partition_key: str) -> None:
        await self.put_document(KIND_DATABASE_SOURCE, source.id, partition_key, source.model_dump(mode="json"))

    async def get_database_source(self, source_id: str, partition_key: str) -> Optional[DatabaseSource]:
        return await self._get_model(DatabaseSource, KIND_DATABASE_SOURCE, source_id, partition_key)

    async def list_database_sources(self, partition_key: str) -> List[DatabaseSource]:
        return await self._list_models(DatabaseSource, KIND_DATABASE_SOURCE, partition_key)

    async def delete_database_source(self, source_id: str, partition_key: str) -> None:
        await self.delete_document(KIND_DATABASE_SOURCE, source_id, partition_key)

    async def add_event(self, session_id: str, event_type: str, payload: dict) -> dict:
        created_at = utc_now()
        # seq is allocated by the INSERT itself so concurrent writers never share one
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO events(session_id, seq, event_type, payload_json, created_at) "
                "SELECT ?, COALESCE(MAX(seq), 0) + 1, ?, ?, ? FROM events WHERE session_id=?",
                (session_id, event_type, json.dumps(payload), created_at, session_id),
            )
            row_id = cursor.lastrowid
            await cursor.close()
            cursor = await db.execute("SELECT seq FROM events WHERE id=?", (row_id,))
            row = await cursor.fetchone()
            await cursor.close()
            await db.commit()
        seq = int(row[0])
        return {"session_id": session_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, session_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE session_id=? AND seq>? ORDER BY seq ASC",
            (session_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
