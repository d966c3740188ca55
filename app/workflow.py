import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from .config import WorkflowPacingConfig
from .context import SessionContext, SessionStore
from .events import EventBus
from .fanout import FanOutCoordinator
from .mcp_client import ToolInvoker
from .schemas import (
    AttachedFile,
    ChatSession,
    DatabaseSource,
    Message,
    PendingStep,
    ToolDescriptor,
    Workflow,
    WorkflowExport,
    WorkflowStep,
)
from .scraper import WebScraperClient, is_scrape_error
from .search import SearchService


logger = logging.getLogger("uvicorn.error")

FILE_UPLOAD_PROMPT = "Please upload required files."
SOURCE_NOT_FOUND = "Database source not found. Skipping search..."
SCRAPER_URL_PROMPT = "Workflow Scraper: Please enter URL to scrape"
SEARCH_QUERY_PREFIX = "Workflow Search:"
PPTX_HINT = (
    "\n\n(IMPORTANT: Please format the output as a presentation. Separate each slide with a "
    "horizontal rule '---' on a new line so it can be parsed correctly.)"
)
SEARCH_STEP_TYPES = ("database_search", "vector_search")
# Steps that only count as done once a message tagged with their index exists.
INPUT_STEP_TYPES = ("prompt", "file_upload", "database_search", "vector_search", "web_scraper")


class WorkflowNotFound(LookupError):
    pass


class StepAction(str, Enum):
    CONTINUE = "continue"
    HALT = "halt"


@dataclass(frozen=True)
class StepOutcome:
    action: StepAction
    delay: float = 0.0

    @classmethod
    def advance(cls, delay: float = 0.0) -> "StepOutcome":
        return cls(StepAction.CONTINUE, delay)

    @classmethod
    def halt(cls) -> "StepOutcome":
        return cls(StepAction.HALT)


def search_query_prompt(source_name: str) -> str:
    return f"{SEARCH_QUERY_PREFIX} Please enter search query for {source_name}"


def export_message_text(export_format: str) -> str:
    return (
        "**Workflow Export Ready**\n\nThe current context has been prepared for export in "
        f"**{export_format.upper()}** format. Click the button below to download the file."
    )


def effective_prompt(workflow: Workflow, index: int) -> str:
    step = workflow.steps[index]
    prompt = step.prompt or ""
    following = workflow.steps[index + 1] if index + 1 < len(workflow.steps) else None
    if following is not None and following.type == "export" and following.export_format == "pptx":
        prompt += PPTX_HINT
    return prompt


def step_is_complete(step: WorkflowStep, index: int, messages: Sequence[Message]) -> bool:
    if step.type not in INPUT_STEP_TYPES:
        return True
    if step.type == "file_upload":
        return any(m.workflow_step_index == index and m.attachments for m in messages)
    if not messages or messages[-1].workflow_step_index != index:
        return False
    # A prompt step whose turn failed stays open for a retry.
    return not (step.type == "prompt" and any(r.status == "error" for r in messages[-1].responses.values()))


def pending_state(
    workflow: Workflow,
    index: Optional[int],
    messages: Sequence[Message],
    sources: Optional[Mapping[str, DatabaseSource]] = None,
) -> Optional[PendingStep]:
    """Rebuild what a paused workflow is waiting for without re-running any step."""
    if index is None or not 0 <= index < len(workflow.steps):
        return None
    step = workflow.steps[index]
    has_next = index < len(workflow.steps) - 1
    complete = step_is_complete(step, index, messages)

    def _pending(awaiting: str, guided: Optional[str] = None, input_text: Optional[str] = None) -> PendingStep:
        return PendingStep(
            index=index,
            step_type=step.type,
            awaiting=awaiting,
            guided_instruction=guided,
            input_text=input_text,
            has_next=has_next,
        )

    if complete:
        return _pending("next", step.multi_step_instruction if step.type != "prompt" else None)
    if step.type == "prompt":
        return _pending("confirmation", step.multi_step_instruction, effective_prompt(workflow, index))
    if step.type == "file_upload":
        return _pending("files", step.file_requirement or FILE_UPLOAD_PROMPT)
    if step.type in SEARCH_STEP_TYPES:
        source = (sources or {}).get(step.database_id or "")
        name = source.name if source else (step.database_id or "database")
        return _pending("query", search_query_prompt(name))
    if step.type == "web_scraper":
        return _pending("url", SCRAPER_URL_PROMPT)
    return _pending("next")


StepHandler = Callable[[SessionContext, Workflow, int, WorkflowStep, Optional[str]], Awaitable[StepOutcome]]


class WorkflowEngine:
    """Explicit state machine over a workflow's steps.

    The persisted state is just ``session.current_workflow_step``; every handler
    returns a StepOutcome and ``run`` is the only place that moves the index.
    """

    def __init__(
        self,
        store: SessionStore,
        fanout: FanOutCoordinator,
        search: SearchService,
        scraper: WebScraperClient,
        invoker: Optional[ToolInvoker] = None,
        bus: Optional[EventBus] = None,
        pacing: Optional[WorkflowPacingConfig] = None,
        resource_partition: str = "local",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.db = store.db
        self.fanout = fanout
        self.search = search
        self.scraper = scraper
        self.invoker = invoker
        self.bus = bus
        self.pacing = pacing or WorkflowPacingConfig()
        self.resource_partition = resource_partition
        self.sleep = sleep
        self.handlers: Dict[str, StepHandler] = {
            "prompt": self._step_prompt,
            "file_upload": self._step_file_upload,
            "mcp_tool": self._step_mcp_tool,
            "export": self._step_export,
            "persona": self._step_persona,
            "database_search": self._step_search,
            "vector_search": self._step_search,
            "web_scraper": self._step_web_scraper,
        }

    async def _emit(self, ctx: SessionContext, event_type: str, payload: dict) -> None:
        if self.bus is not None:
            await self.bus.emit(ctx.session_id, event_type, payload)

    async def workflow_for(self, ctx: SessionContext) -> Workflow:
        workflow_id = ctx.session.workflow_id
        workflow = await self.db.get_workflow(workflow_id, self.resource_partition) if workflow_id else None
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        return workflow

    async def pending(self, ctx: SessionContext) -> Optional[PendingStep]:
        if not ctx.session.workflow_id or ctx.session.current_workflow_step is None:
            return None
        workflow = await self.workflow_for(ctx)
        sources = {s.id: s for s in await self.db.list_database_sources(self.resource_partition)}
        return pending_state(workflow, ctx.session.current_workflow_step, ctx.messages, sources)

    def active_tools(self, ctx: SessionContext) -> List[ToolDescriptor]:
        if self.invoker is None:
            return []
        return [t for t in self.invoker.all_tools() if t.id in ctx.selected_tool_ids]

    async def send(
        self,
        ctx: SessionContext,
        text: str,
        attachments: Sequence[AttachedFile] = (),
        models: Optional[Sequence[str]] = None,
    ) -> Message:
        persona = None
        if ctx.session.persona_id:
            persona = await self.db.get_persona(ctx.session.persona_id, self.resource_partition)
        ctx.clear_guidance()
        assistant = await self.fanout.run_turn(
            ctx,
            text,
            models or ctx.selected_models,
            attachments,
            self.active_tools(ctx),
            persona,
        )
        await self.store.autosave(ctx)
        return assistant

    async def play(self, workflow: Workflow, partition_key: str, persona_id: Optional[str] = None) -> SessionContext:
        session = ChatSession(
            id=uuid.uuid4().hex,
            title=workflow.name,
            workflow_id=workflow.id,
            persona_id=persona_id,
            current_workflow_step=0 if workflow.steps else None,
        )
        ctx = self.store.open(session, partition_key)
        ctx.unsaved_changes = True
        logger.info("Playing workflow %s in session %s", workflow.id, session.id)
        await self.run(ctx, workflow, 0)
        return ctx

    async def run(
        self,
        ctx: SessionContext,
        workflow: Workflow,
        start_index: int,
        override: Optional[str] = None,
    ) -> Optional[int]:
        """Advance from start_index until a step halts or the workflow ends."""
        index = start_index
        while True:
            step = workflow.steps[index] if 0 <= index < len(workflow.steps) else None
            handler = self.handlers.get(step.type) if step is not None else None
            if step is not None and handler is None:
                logger.warning("Unknown workflow step type %r at index %s; ending workflow", step.type, index)
            if handler is None:
                await self._finish(ctx, workflow)
                return None
            ctx.session.current_workflow_step = index
            ctx.unsaved_changes = True
            await self._emit(ctx, "workflow_step", {"workflow_id": workflow.id, "index": index, "type": step.type})
            outcome = await handler(ctx, workflow, index, step, override)
            override = None
            if outcome.action == StepAction.HALT:
                await self._emit(
                    ctx,
                    "workflow_paused",
                    {"workflow_id": workflow.id, "index": index, "guided_instruction": ctx.guided_instruction},
                )
                await self.store.autosave(ctx)
                return index
            if outcome.delay:
                await self.sleep(outcome.delay)
            index += 1

    async def _finish(self, ctx: SessionContext, workflow: Workflow) -> None:
        ctx.session.current_workflow_step = None
        ctx.clear_guidance()
        ctx.unsaved_changes = True
        await self._emit(ctx, "workflow_complete", {"workflow_id": workflow.id})
        await self.store.autosave(ctx)

    async def next_step(self, ctx: SessionContext) -> Optional[int]:
        index = ctx.session.current_workflow_step
        if index is None:
            return None
        workflow = await self.workflow_for(ctx)
        ctx.clear_guidance()
        return await self.run(ctx, workflow, index + 1)

    async def submit_input(
        self,
        ctx: SessionContext,
        text: str,
        attachments: Sequence[AttachedFile] = (),
        models: Optional[Sequence[str]] = None,
    ) -> Optional[int]:
        """Route user input to whatever the current step is waiting for, else send a plain turn."""
        index = ctx.session.current_workflow_step
        workflow = await self.workflow_for(ctx) if ctx.session.workflow_id and index is not None else None
        pending = pending_state(workflow, index, ctx.messages) if workflow else None

        if pending is not None and pending.awaiting == "files" and attachments:
            ctx.append(
                Message(
                    id=uuid.uuid4().hex,
                    role="user",
                    content=text,
                    attachments=list(attachments),
                    workflow_step_index=index,
                )
            )
            ctx.clear_guidance()
            return await self.run(ctx, workflow, index + 1)
        if pending is not None and pending.awaiting in ("query", "url") and text.strip():
            return await self.run(ctx, workflow, index, override=text.strip())
        if pending is not None and pending.awaiting == "confirmation":
            step = workflow.steps[index]
            assistant = await self.send(ctx, text or pending.input_text or "", attachments, models or _step_models(step))
            if _all_succeeded(assistant):
                return await self.run(ctx, workflow, index + 1)
            return index

        if not text.strip() and not attachments:
            return index
        await self.send(ctx, text, attachments, models)
        return ctx.session.current_workflow_step

    async def branch(
        self,
        ctx: SessionContext,
        message_id: str,
        model_id: str,
        partition_key: str,
        title: Optional[str] = None,
        continue_workflow: bool = False,
    ) -> Optional[SessionContext]:
        idx, target = ctx.find_message(message_id)
        if target is None:
            return None
        target = target.model_copy(deep=True)
        if model_id in target.responses:
            target.responses = {model_id: target.responses[model_id]}
        messages = [m.model_copy(deep=True) for m in ctx.messages[:idx]] + [target]

        workflow_id = None
        step_index = None
        if continue_workflow and ctx.session.workflow_id:
            workflow_id = ctx.session.workflow_id
            step_index = target.workflow_step_index
            if step_index is None:
                step_index = ctx.session.current_workflow_step
            try:
                workflow = await self.workflow_for(ctx)
            except WorkflowNotFound:
                logger.warning("Branching without workflow: %s is gone", workflow_id)
                workflow_id, step_index = None, None
            else:
                if step_index is not None and not 0 <= step_index < len(workflow.steps):
                    step_index = None

        session = ChatSession(
            id=uuid.uuid4().hex,
            title=title or f"{ctx.session.title or 'Conversation'} (Branch)",
            messages=messages,
            folder_id=ctx.session.folder_id,
            persona_id=ctx.session.persona_id,
            workflow_id=workflow_id,
            current_workflow_step=step_index,
        )
        branched = self.store.open(session, partition_key)
        branched.selected_models = [model_id]
        await self.store.save(branched)
        return branched

    async def _step_prompt(self, ctx, workflow, index, step, override) -> StepOutcome:
        if not step.prompt:
            logger.warning("Prompt step %s has no prompt text; skipping", index)
            return StepOutcome.advance(self.pacing.step_delay_s)
        if step.model:
            ctx.selected_models = [step.model]
        prompt = effective_prompt(workflow, index)
        ctx.input_text = prompt
        if step.multi_step_instruction:
            ctx.guided_instruction = step.multi_step_instruction
            return StepOutcome.halt()
        assistant = await self.send(ctx, prompt, models=_step_models(step))
        if not _all_succeeded(assistant):
            # Keep the position so the user can retry this step.
            ctx.input_text = prompt
            return StepOutcome.halt()
        return StepOutcome.advance(self.pacing.step_delay_s)

    async def _step_file_upload(self, ctx, workflow, index, step, override) -> StepOutcome:
        ctx.guided_instruction = step.file_requirement or FILE_UPLOAD_PROMPT
        return StepOutcome.halt()

    async def _step_mcp_tool(self, ctx, workflow, index, step, override) -> StepOutcome:
        available = self.invoker.all_tools() if self.invoker else []
        enabled = [t for t in available if t.id in step.tool_ids]
        ctx.selected_tool_ids = {t.id for t in enabled}
        missing = [tid for tid in step.tool_ids if tid not in ctx.selected_tool_ids]
        if missing:
            logger.warning("Workflow %s step %s: tools not available: %s", workflow.id, index, ", ".join(missing))
            ctx.guided_instruction = f"Tools not available: {', '.join(missing)}. Skipping..."
        return StepOutcome.advance(self.pacing.step_delay_s)

    async def _step_persona(self, ctx, workflow, index, step, override) -> StepOutcome:
        persona = None
        if step.persona_id:
            persona = await self.db.get_persona(step.persona_id, self.resource_partition)
        if persona is None:
            logger.warning("Workflow %s step %s: persona %s not found", workflow.id, index, step.persona_id)
            ctx.guided_instruction = "Persona not found. Skipping..."
            return StepOutcome.advance(self.pacing.skip_delay_s)
        ctx.session.persona_id = persona.id
        return StepOutcome.advance(self.pacing.step_delay_s)

    async def _step_export(self, ctx, workflow, index, step, override) -> StepOutcome:
        export_format = step.export_format or "text"
        last = ctx.messages[-1] if ctx.messages else None
        if last is None or last.workflow_export is None or last.workflow_export.format != export_format:
            ctx.append(
                Message(
                    id=uuid.uuid4().hex,
                    role="user",
                    is_system=True,
                    content=export_message_text(export_format),
                    workflow_export=WorkflowExport(format=export_format),
                    workflow_step_index=index,
                )
            )
        ctx.guided_instruction = None
        return StepOutcome.advance(self.pacing.step_delay_s)

    async def _step_search(self, ctx, workflow, index, step, override) -> StepOutcome:
        source = None
        if step.database_id:
            source = await self.db.get_database_source(step.database_id, self.resource_partition)
        if source is None:
            logger.warning("Workflow %s step %s: database source %s not found", workflow.id, index, step.database_id)
            ctx.guided_instruction = SOURCE_NOT_FOUND
            return StepOutcome.advance(self.pacing.skip_delay_s)

        query = override or step.search_query or ""
        if not query:
            ctx.guided_instruction = search_query_prompt(source.name)
            return StepOutcome.halt()

        ctx.guided_instruction = f'Searching {source.name} for "{query}"...'
        try:
            records = await self.search.search(source, query)
        except Exception as exc:
            logger.warning("Search on %s failed: %s", source.name, exc)
            ctx.append(
                Message(
                    id=uuid.uuid4().hex,
                    role="user",
                    is_system=True,
                    content=f"**Database Search Results**\nSource: {source.name}\nQuery: \"{query}\"\n\nSearch Error: {exc}",
                    workflow_step_index=index,
                )
            )
            ctx.guided_instruction = f"Search Error: {exc}"
            return StepOutcome.advance(self.pacing.result_delay_s)

        ctx.append(self.search.results_message(source, query, records, index))
        ctx.guided_instruction = f"Database Search: Found {len(records)} records."
        if step.multi_step_instruction:
            ctx.guided_instruction = step.multi_step_instruction
            return StepOutcome.halt()
        return StepOutcome.advance(self.pacing.result_delay_s)

    async def _step_web_scraper(self, ctx, workflow, index, step, override) -> StepOutcome:
        url = override or step.url
        if not url:
            ctx.guided_instruction = SCRAPER_URL_PROMPT
            return StepOutcome.halt()
        ctx.guided_instruction = f"Scraping {url}..."
        content = await self.scraper.scrape_text(url, step.include_meta)
        ctx.append(
            Message(
                id=uuid.uuid4().hex,
                role="user",
                is_system=True,
                content=content,
                workflow_step_index=index,
            )
        )
        if is_scrape_error(content):
            logger.warning("Workflow %s step %s: %s", workflow.id, index, content)
            ctx.guided_instruction = f"Scraping failed: {content}"
            return StepOutcome.advance(self.pacing.result_delay_s)
        if step.multi_step_instruction:
            ctx.guided_instruction = step.multi_step_instruction
            return StepOutcome.halt()
        return StepOutcome.advance(self.pacing.result_delay_s)


def _step_models(step: WorkflowStep) -> Optional[List[str]]:
    return [step.model] if step.model else None


def _all_succeeded(message: Message) -> bool:
    return all(r.status == "success" for r in message.responses.values())
