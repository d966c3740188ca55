import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .backends import BackendRegistry
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .context import SessionContext, SessionStore
from .db import Database
from .events import EventBus
from .fanout import FanOutCoordinator, MessageNotFound
from .mcp_client import ToolInvoker
from .schemas import (
    BranchRequest,
    ChatSession,
    CreateSessionRequest,
    DatabaseSource,
    Persona,
    PlayWorkflowRequest,
    RegenerateRequest,
    SendMessageRequest,
    VersionRequest,
    Workflow,
)
from .scraper import WebScraperClient
from .search import AzureSearchClient, SearchError, SearchService
from .session_sync import SharedSessionPoller
from .workflow import WorkflowEngine, WorkflowNotFound


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_backend(request: Request) -> BackendRegistry:
    return request.app.state.backend


def get_tool_invoker(request: Request) -> ToolInvoker:
    return request.app.state.tool_invoker


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_fanout(request: Request) -> FanOutCoordinator:
    return request.app.state.fanout


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def get_search(request: Request) -> SearchService:
    return request.app.state.search


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_partition(request: Request, partition: Optional[str] = None) -> str:
    return partition or request.app.state.settings.default_partition


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def load_context(session_id: str, partition: str, store: SessionStore) -> SessionContext:
    ctx = await store.get(session_id, partition)
    if ctx is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return ctx


async def session_payload(ctx: SessionContext, engine: WorkflowEngine) -> Dict[str, Any]:
    try:
        pending = await engine.pending(ctx)
    except WorkflowNotFound:
        pending = None
    return {
        "session": ctx.session.model_dump(mode="json"),
        "selected_models": ctx.selected_models,
        "selected_tool_ids": sorted(ctx.selected_tool_ids),
        "guided_instruction": ctx.guided_instruction,
        "input_text": ctx.input_text,
        "is_generating": ctx.is_generating,
        "pending": pending.model_dump() if pending else None,
    }


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    backend: BackendRegistry = Depends(get_backend),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    request.app.state.settings = new_settings
    backend.configure(new_settings)
    request.app.state.scraper.endpoint = new_settings.web_scraper_endpoint
    request.app.state.engine.pacing = new_settings.workflow_pacing
    request.app.state.fanout.max_tool_loops = new_settings.max_tool_loops
    request.app.state.poller.interval_s = new_settings.poll_interval_s
    index_client = request.app.state.search.index_client
    if index_client is not None:
        index_client.api_version = new_settings.search_api_version
    invoker = request.app.state.tool_invoker
    invoker.configure(new_settings.mcp_servers, new_settings.tool_timeout_s)
    if invoker.servers:
        await invoker.discover()
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/models")
async def list_models(settings: AppSettings = Depends(get_settings)):
    return {"available": settings.available_models, "default": settings.default_models}


@router.get("/api/tools")
async def list_tools(invoker: ToolInvoker = Depends(get_tool_invoker)):
    return {"tools": [t.model_dump() for t in invoker.all_tools()]}


@router.post("/api/tools/discover")
async def discover_tools(invoker: ToolInvoker = Depends(get_tool_invoker)):
    found = await invoker.discover()
    return {"servers": {name: len(tools) for name, tools in found.items()}}


@router.get("/api/sessions")
async def list_sessions(partition: str = Depends(get_partition), db: Database = Depends(get_db)):
    sessions = await db.list_sessions(partition)
    return {
        "sessions": [
            {"id": s.id, "title": s.title, "timestamp": s.timestamp, "workflow_id": s.workflow_id, "is_shared": s.is_shared}
            for s in sessions
        ]
    }


@router.post("/api/sessions")
async def create_session(
    payload: CreateSessionRequest,
    request: Request,
    store: SessionStore = Depends(get_store),
    engine: WorkflowEngine = Depends(get_engine),
):
    session = ChatSession(
        id=uuid.uuid4().hex,
        title=payload.title,
        persona_id=payload.persona_id,
        is_shared=payload.is_shared,
        group_id=payload.group_id,
    )
    ctx = store.open(session, session.partition_key(request.app.state.settings.default_partition))
    await store.save(ctx)
    return await session_payload(ctx, engine)


@router.get("/api/sessions/{session_id}")
async def get_session(
    session_id: str,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
    engine: WorkflowEngine = Depends(get_engine),
):
    ctx = await load_context(session_id, partition, store)
    return await session_payload(ctx, engine)


@router.delete("/api/sessions/{session_id}")
async def delete_session(
    session_id: str,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
):
    await store.delete(session_id, partition)
    return {"ok": True}


@router.post("/api/sessions/{session_id}/messages")
async def send_message(
    session_id: str,
    payload: SendMessageRequest,
    partition: str = Depends(get_partition),
    settings: AppSettings = Depends(get_settings),
    store: SessionStore = Depends(get_store),
    engine: WorkflowEngine = Depends(get_engine),
):
    ctx = await load_context(session_id, partition, store)
    if ctx.is_generating:
        raise HTTPException(status_code=409, detail="A generation is already in progress.")
    # An empty send confirms a paused workflow prompt with its prepared text.
    if not payload.text.strip() and not payload.attachments and ctx.session.current_workflow_step is None:
        raise HTTPException(status_code=400, detail="Message text or attachments required.")
    unknown = [m for m in payload.models if m not in settings.available_models]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown models: {', '.join(unknown)}")
    if payload.models:
        ctx.selected_models = list(payload.models)
    if payload.tool_ids is not None:
        ctx.selected_tool_ids = set(payload.tool_ids)
    if payload.persona_id is not None:
        ctx.session.persona_id = payload.persona_id or None
    try:
        await engine.submit_input(ctx, payload.text, payload.attachments)
    except WorkflowNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    await store.autosave(ctx)
    return await session_payload(ctx, engine)


@router.post("/api/sessions/{session_id}/messages/{message_id}/regenerate")
async def regenerate(
    session_id: str,
    message_id: str,
    payload: RegenerateRequest,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
    fanout: FanOutCoordinator = Depends(get_fanout),
    engine: WorkflowEngine = Depends(get_engine),
    invoker: ToolInvoker = Depends(get_tool_invoker),
    db: Database = Depends(get_db),
):
    ctx = await load_context(session_id, partition, store)
    if ctx.is_generating:
        raise HTTPException(status_code=409, detail="A generation is already in progress.")
    persona = None
    if ctx.session.persona_id:
        persona = await db.get_persona(ctx.session.persona_id, engine.resource_partition)
    try:
        response = await fanout.regenerate(
            ctx, message_id, payload.model_id, payload.kind, invoker.all_tools(), persona
        )
    except MessageNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    await store.autosave(ctx)
    return {"response": response.model_dump()}


@router.post("/api/sessions/{session_id}/messages/{message_id}/version")
async def switch_version(
    session_id: str,
    message_id: str,
    payload: VersionRequest,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
    fanout: FanOutCoordinator = Depends(get_fanout),
):
    ctx = await load_context(session_id, partition, store)
    try:
        response = fanout.select_version(ctx, message_id, payload.model_id, payload.direction)
    except MessageNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    await store.autosave(ctx)
    return {"response": response.model_dump()}


@router.post("/api/sessions/{session_id}/messages/{message_id}/load-more")
async def load_more(
    session_id: str,
    message_id: str,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
    search: SearchService = Depends(get_search),
    engine: WorkflowEngine = Depends(get_engine),
    db: Database = Depends(get_db),
):
    ctx = await load_context(session_id, partition, store)
    _, msg = ctx.find_message(message_id)
    if msg is None or msg.search_metadata is None:
        raise HTTPException(status_code=404, detail="Search results not found")
    source = await db.get_database_source(msg.search_metadata.database_id, engine.resource_partition)
    if source is None:
        raise HTTPException(status_code=404, detail="Database source not found")
    more = search.load_more(msg, source)
    if more is None:
        return {"message": None}
    ctx.append(more)
    await store.autosave(ctx)
    return {"message": more.model_dump(mode="json")}


@router.post("/api/sessions/{session_id}/branch")
async def branch_session(
    session_id: str,
    payload: BranchRequest,
    partition: str = Depends(get_partition),
    settings: AppSettings = Depends(get_settings),
    store: SessionStore = Depends(get_store),
    engine: WorkflowEngine = Depends(get_engine),
):
    ctx = await load_context(session_id, partition, store)
    branched = await engine.branch(
        ctx,
        payload.message_id,
        payload.model_id,
        settings.default_partition,
        title=payload.title,
        continue_workflow=payload.continue_workflow,
    )
    if branched is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return await session_payload(branched, engine)


@router.post("/api/sessions/{session_id}/cancel")
async def cancel_session(
    session_id: str,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
    fanout: FanOutCoordinator = Depends(get_fanout),
):
    ctx = await load_context(session_id, partition, store)
    return {"ok": True, "cancelled": fanout.cancel(ctx)}


@router.post("/api/workflows/{workflow_id}/play")
async def play_workflow(
    workflow_id: str,
    payload: PlayWorkflowRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    engine: WorkflowEngine = Depends(get_engine),
):
    workflow = await db.get_workflow(workflow_id, engine.resource_partition)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    ctx = await engine.play(workflow, settings.default_partition, persona_id=payload.persona_id)
    return await session_payload(ctx, engine)


@router.post("/api/sessions/{session_id}/workflow/next")
async def next_workflow_step(
    session_id: str,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
    engine: WorkflowEngine = Depends(get_engine),
):
    ctx = await load_context(session_id, partition, store)
    if ctx.session.current_workflow_step is None:
        raise HTTPException(status_code=400, detail="No workflow step is active.")
    if ctx.is_generating:
        raise HTTPException(status_code=409, detail="A generation is already in progress.")
    try:
        await engine.next_step(ctx)
    except WorkflowNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return await session_payload(ctx, engine)


@router.get("/api/sessions/{session_id}/workflow/state")
async def workflow_state(
    session_id: str,
    partition: str = Depends(get_partition),
    store: SessionStore = Depends(get_store),
    engine: WorkflowEngine = Depends(get_engine),
):
    ctx = await load_context(session_id, partition, store)
    payload = await session_payload(ctx, engine)
    return {"current_workflow_step": ctx.session.current_workflow_step, "pending": payload["pending"]}


@router.get("/api/workflows")
async def list_workflows(engine: WorkflowEngine = Depends(get_engine), db: Database = Depends(get_db)):
    workflows = await db.list_workflows(engine.resource_partition)
    return {"workflows": [w.model_dump(mode="json") for w in workflows]}


@router.put("/api/workflows/{workflow_id}")
async def save_workflow(
    workflow_id: str,
    workflow: Workflow,
    engine: WorkflowEngine = Depends(get_engine),
    db: Database = Depends(get_db),
):
    if workflow.id != workflow_id:
        raise HTTPException(status_code=400, detail="Workflow id mismatch.")
    await db.save_workflow(workflow, engine.resource_partition)
    return {"ok": True}


@router.get("/api/personas")
async def list_personas(engine: WorkflowEngine = Depends(get_engine), db: Database = Depends(get_db)):
    personas = await db.list_personas(engine.resource_partition)
    return {"personas": [p.model_dump() for p in personas]}


@router.put("/api/personas/{persona_id}")
async def save_persona(
    persona_id: str,
    persona: Persona,
    engine: WorkflowEngine = Depends(get_engine),
    db: Database = Depends(get_db),
):
    if persona.id != persona_id:
        raise HTTPException(status_code=400, detail="Persona id mismatch.")
    await db.save_persona(persona, engine.resource_partition)
    return {"ok": True}


@router.get("/api/database-sources")
async def list_database_sources(engine: WorkflowEngine = Depends(get_engine), db: Database = Depends(get_db)):
    sources = await db.list_database_sources(engine.resource_partition)
    # Search keys never leave the server.
    return {"sources": [s.model_dump(exclude={"azure_search_key"}) for s in sources]}


@router.put("/api/database-sources/{source_id}")
async def save_database_source(
    source_id: str,
    source: DatabaseSource,
    engine: WorkflowEngine = Depends(get_engine),
    db: Database = Depends(get_db),
    search: SearchService = Depends(get_search),
):
    if source.id != source_id:
        raise HTTPException(status_code=400, detail="Database source id mismatch.")
    if source.type == "azure_ai_search" or not source.row_count:
        try:
            row_count = await search.count(source)
        except SearchError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        source = source.model_copy(update={"row_count": row_count})
    await db.save_database_source(source, engine.resource_partition)
    return {"ok": True, "row_count": source.row_count}


@router.delete("/api/database-sources/{source_id}")
async def delete_database_source(
    source_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    db: Database = Depends(get_db),
):
    await db.delete_database_source(source_id, engine.resource_partition)
    return {"ok": True}


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        async with bus.listen() as queue:
            while True:
                yield sse_format(await queue.get())

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/sessions/{session_id}/events")
async def list_session_events(session_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    return {"events": await db.list_events(session_id, after_seq)}


@router.get("/sessions/{session_id}/events")
async def stream_events(
    session_id: str,
    after_seq: int = 0,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    async def event_generator():
        async with bus.listen(session_id) as queue:
            last_seq = after_seq
            for ev in await db.list_events(session_id, after_seq):
                last_seq = ev["seq"]
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                # Skip anything already replayed from storage.
                if ev["seq"] <= last_seq:
                    continue
                yield sse_format(ev)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    backend: Optional[BackendRegistry] = None,
    tool_invoker: Optional[ToolInvoker] = None,
    scraper: Optional[WebScraperClient] = None,
    search: Optional[SearchService] = None,
    config_path: Optional[Path] = None,
    start_poller: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        if app.state.tool_invoker.servers:
            found = await app.state.tool_invoker.discover()
            logger.info("Discovered %s tool(s) across %s server(s)", sum(len(t) for t in found.values()), len(found))
        stop_event = asyncio.Event()
        poller_task = None
        if start_poller:
            poller_task = asyncio.create_task(app.state.poller.run(stop_event))
        try:
            yield
        finally:
            stop_event.set()
            if poller_task is not None:
                poller_task.cancel()
                await asyncio.gather(poller_task, return_exceptions=True)
            await app.state.backend.close()
            await app.state.tool_invoker.close()
            await app.state.scraper.close()
            await app.state.search.close()

    app = FastAPI(title="MultiChat Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.backend = backend or BackendRegistry(settings)
    app.state.tool_invoker = tool_invoker or ToolInvoker(settings.mcp_servers, timeout_s=settings.tool_timeout_s)
    app.state.scraper = scraper or WebScraperClient(settings.web_scraper_endpoint)
    app.state.search = search or SearchService(
        AzureSearchClient(app.state.backend, api_version=settings.search_api_version)
    )
    app.state.bus = EventBus(app.state.db)
    app.state.store = SessionStore(app.state.db, settings.default_models)
    app.state.fanout = FanOutCoordinator(
        app.state.backend,
        app.state.tool_invoker,
        app.state.bus,
        max_tool_loops=settings.max_tool_loops,
    )
    app.state.engine = WorkflowEngine(
        app.state.store,
        app.state.fanout,
        app.state.search,
        app.state.scraper,
        invoker=app.state.tool_invoker,
        bus=app.state.bus,
        pacing=settings.workflow_pacing,
        resource_partition=settings.default_partition,
    )
    app.state.poller = SharedSessionPoller(app.state.store, interval_s=settings.poll_interval_s)
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("MULTICHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "app.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
