import asyncio
import logging
import uuid
from datetime import date
from typing import Callable, Dict, List, Literal, Optional, Sequence

from .events import EventBus
from .generation import MAX_TOOL_LOOPS, ModelBackend, ToolExecutor, generate
from .context import SessionContext
from .schemas import (
    AttachedFile,
    GenerationRequest,
    Message,
    ModelResponse,
    ModelResponseVersion,
    Persona,
    RegenerateKind,
    ToolDescriptor,
)


logger = logging.getLogger("uvicorn.error")

CANCELLED_ERROR = "Cancelled"
REGENERATE_VARIANTS: Dict[str, tuple] = {
    "retry": ("", "Retry"),
    "expand": ("\n\n(Please provide a detailed and expanded response)", "Expanded"),
    "concise": ("\n\n(Please keep the response concise)", "Concise"),
}


class MessageNotFound(LookupError):
    pass


def default_system_instruction(today: date) -> str:
    return (
        f"You are a helpful assistant. Today is {today.strftime('%m/%d/%Y')}. "
        "You accept documents and attachments that can be further analyzed in the Document Briefcase. "
        "You can visualize data, BUT ONLY VISUALIZE IF ASKED, by outputting a code block with language "
        '"chart" or "json-chart" containing a JSON object with this schema: '
        '{ type: "bar"|"line"|"area"|"pie", title?: string, description?: string, data: any[], '
        "xAxisKey: string, series: [{ key: string, name?: string, color?: string }] }."
    )


def new_message_id() -> str:
    return uuid.uuid4().hex


class FanOutCoordinator:
    """Runs one generation per selected model and merges the results into the transcript."""

    def __init__(
        self,
        backend: ModelBackend,
        invoker: Optional[ToolExecutor] = None,
        bus: Optional[EventBus] = None,
        max_tool_loops: int = MAX_TOOL_LOOPS,
        today: Callable[[], date] = date.today,
    ):
        self.backend = backend
        self.invoker = invoker
        self.bus = bus
        self.max_tool_loops = max_tool_loops
        self.today = today

    def system_instruction(self, persona: Optional[Persona]) -> str:
        if persona and persona.system_instruction:
            return persona.system_instruction
        return default_system_instruction(self.today())

    async def _emit(self, ctx: SessionContext, message_id: str, response: ModelResponse) -> None:
        if self.bus is None:
            return
        await self.bus.emit(
            ctx.session_id,
            "response_status",
            {
                "message_id": message_id,
                "model_id": response.model_id,
                "status": response.status,
                "error": response.error,
            },
        )

    def _store(self, ctx: SessionContext, message_id: str, response: ModelResponse) -> bool:
        _, msg = ctx.find_message(message_id)
        if msg is None or response.model_id not in msg.responses:
            logger.info(
                "Dropping %s result for message %s no longer in session %s",
                response.model_id,
                message_id,
                ctx.session_id,
            )
            return False
        msg.responses[response.model_id] = response
        ctx.unsaved_changes = True
        return True

    async def _run_one(self, ctx: SessionContext, message_id: str, request: GenerationRequest) -> None:
        model_id = request.model_id
        try:
            text = await generate(request, self.backend, self.invoker, self.max_tool_loops)
        except asyncio.CancelledError:
            self._store(ctx, message_id, ModelResponse(model_id=model_id, status="error", error=CANCELLED_ERROR))
            raise
        except Exception as exc:
            logger.warning("Generation failed for %s: %s", model_id, exc)
            response = ModelResponse(model_id=model_id, status="error", error=str(exc) or "Error")
        else:
            response = ModelResponse(
                model_id=model_id,
                text=text,
                status="success",
                versions=[ModelResponseVersion(text=text, label="Original")],
                current_version_index=0,
            )
        if self._store(ctx, message_id, response):
            await self._emit(ctx, message_id, response)

    async def _gather(self, ctx: SessionContext, message_id: str, requests: Sequence[GenerationRequest]) -> None:
        tasks = []
        for request in requests:
            task = asyncio.create_task(self._run_one(ctx, message_id, request))
            ctx.generation_tasks[(message_id, request.model_id)] = task
            tasks.append(task)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            for request in requests:
                ctx.generation_tasks.pop((message_id, request.model_id), None)
        _, msg = ctx.find_message(message_id)
        for request, result in zip(requests, results):
            if isinstance(result, asyncio.CancelledError) and msg is not None:
                await self._emit(ctx, message_id, msg.responses[request.model_id])

    async def run_turn(
        self,
        ctx: SessionContext,
        text: str,
        models: Sequence[str],
        attachments: Sequence[AttachedFile] = (),
        tools: Sequence[ToolDescriptor] = (),
        persona: Optional[Persona] = None,
    ) -> Message:
        """Append the user turn plus one assistant message and wait until every model settles."""
        models = list(dict.fromkeys(models))
        if not models:
            raise ValueError("At least one model must be selected")
        history = list(ctx.messages)
        step_index = ctx.session.current_workflow_step
        ctx.append(
            Message(
                id=new_message_id(),
                role="user",
                content=text,
                attachments=list(attachments),
                workflow_step_index=step_index,
            )
        )
        assistant = ctx.append(
            Message(
                id=new_message_id(),
                role="assistant",
                responses={m: ModelResponse(model_id=m) for m in models},
                workflow_step_index=step_index,
            )
        )
        for response in assistant.responses.values():
            await self._emit(ctx, assistant.id, response)

        system_instruction = self.system_instruction(persona)
        context_attachments = [a for a in attachments if not a.exclude_from_context]
        requests = [
            GenerationRequest(
                model_id=m,
                prompt_text=text,
                attachments=context_attachments,
                active_tools=list(tools),
                system_instruction=system_instruction,
                history=history,
            )
            for m in models
        ]
        await self._gather(ctx, assistant.id, requests)
        return assistant

    async def regenerate(
        self,
        ctx: SessionContext,
        message_id: str,
        model_id: str,
        kind: RegenerateKind = "retry",
        tools: Sequence[ToolDescriptor] = (),
        persona: Optional[Persona] = None,
    ) -> ModelResponse:
        idx, msg = ctx.find_message(message_id)
        if msg is None or model_id not in msg.responses:
            raise MessageNotFound(f"No response for {model_id} on message {message_id}")
        user_msg = ctx.messages[idx - 1] if idx > 0 else None
        if user_msg is None or user_msg.role != "user":
            raise MessageNotFound(f"Message {message_id} has no preceding user turn")

        suffix, label = REGENERATE_VARIANTS[kind]
        previous = msg.responses[model_id]
        msg.responses[model_id] = previous.model_copy(update={"status": "loading", "error": None})
        await self._emit(ctx, message_id, msg.responses[model_id])

        request = GenerationRequest(
            model_id=model_id,
            prompt_text=user_msg.content + suffix,
            attachments=[a for a in user_msg.attachments if not a.exclude_from_context],
            active_tools=list(tools),
            system_instruction=self.system_instruction(persona),
            history=ctx.messages[: idx - 1],
        )
        task = asyncio.create_task(generate(request, self.backend, self.invoker, self.max_tool_loops))
        ctx.generation_tasks[(message_id, model_id)] = task
        cancelled = previous.model_copy(update={"status": "error", "error": CANCELLED_ERROR})
        try:
            # wait() leaves the task alone if this coroutine is itself cancelled
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            self._store(ctx, message_id, cancelled)
            raise
        finally:
            ctx.generation_tasks.pop((message_id, model_id), None)

        if task.cancelled():
            response = cancelled
        elif task.exception() is not None:
            exc = task.exception()
            logger.warning("Regeneration failed for %s: %s", model_id, exc)
            response = previous.model_copy(update={"status": "error", "error": str(exc) or "Error"})
        else:
            text = task.result()
            versions = list(previous.versions)
            if not any(v.text == text for v in versions):
                versions.append(ModelResponseVersion(text=text, label=label))
            response = previous.model_copy(
                update={
                    "text": text,
                    "status": "success",
                    "error": None,
                    "versions": versions,
                    "current_version_index": next(i for i, v in enumerate(versions) if v.text == text),
                }
            )
        if self._store(ctx, message_id, response):
            await self._emit(ctx, message_id, response)
        return response

    def select_version(
        self,
        ctx: SessionContext,
        message_id: str,
        model_id: str,
        direction: Literal["prev", "next"],
    ) -> ModelResponse:
        _, msg = ctx.find_message(message_id)
        if msg is None or model_id not in msg.responses:
            raise MessageNotFound(f"No response for {model_id} on message {message_id}")
        response = msg.responses[model_id]
        versions = response.versions
        if len(versions) <= 1:
            return response
        unique: List[ModelResponseVersion] = []
        for version in versions:
            if all(u.text != version.text for u in unique):
                unique.append(version)
        current = next((i for i, v in enumerate(unique) if v.text == response.text), 0)
        target = current + (1 if direction == "next" else -1)
        target = max(0, min(target, len(unique) - 1))
        text = unique[target].text
        index = next(i for i, v in enumerate(versions) if v.text == text)
        updated = response.model_copy(update={"current_version_index": index, "text": text})
        msg.responses[model_id] = updated
        ctx.unsaved_changes = True
        return updated

    def cancel(self, ctx: SessionContext) -> int:
        """Cancel every in-flight generation of this session; settled siblings stay as they are."""
        cancelled = 0
        for task in list(ctx.generation_tasks.values()):
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %s generation(s) in session %s", cancelled, ctx.session_id)
        return cancelled
