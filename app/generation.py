import asyncio
import json
import logging
import re
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import ValidationError

from .backends import ContextWindowExceeded
from .schemas import AttachedFile, GenerationRequest, Message, ToolCallInvocation, ToolDescriptor


logger = logging.getLogger("uvicorn.error")

MAX_TOOL_LOOPS = 5
MIN_TOKEN_LEN = 3
ACTION_KEYWORDS = (
    "search",
    "find",
    "lookup",
    "query",
    "get",
    "fetch",
    "retrieve",
    "check",
    "analyze",
    "scan",
    "read",
    "list",
    "show",
    "display",
    "database",
    "db",
    "index",
    "document",
    "file",
    "data",
)
JSON_BLOCK_RE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)

TOOL_INSTRUCTIONS = (
    "[INSTRUCTION: To call a tool, you MUST use the following format. Do NOT hallucinate tool outputs. "
    'Do NOT announce what the tool result "is" before calling it. Do NOT fake a tool response.]\n\n'
    '1. Provide a brief, user-facing explanation (e.g. "Checking database...").\n'
    "2. Create a markdown code block labeled 'json' containing an ARRAY of tool call objects.\n\n"
    "Example:\n"
    "```json\n"
    "[\n"
    '  { "tool": "server.tool_name", "arguments": { "arg": "value" } },\n'
    '  { "tool": "server.other_tool", "arguments": { "id": 123 } }\n'
    "]\n"
    "```\n\n"
    "[IMPORTANT: You can call multiple tools in the array. Strictly use the JSON array format inside the code block.]"
)
CONTINUATION_INSTRUCTION = (
    "[INSTRUCTION]: Use the available information to answer the original request. "
    "If you need more information, call another tool. If you have the answer, state it clearly."
)


class ModelBackend(Protocol):
    async def call(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str] = None,
        history: Sequence[Message] = (),
    ) -> str: ...


class ToolExecutor(Protocol):
    async def execute(self, tool: ToolDescriptor, arguments: Dict) -> str: ...


def has_tool_intent(prompt: str) -> bool:
    lowered = prompt.lower()
    return any(keyword in lowered for keyword in ACTION_KEYWORDS)


def filter_relevant_tools(prompt: str, tools: Sequence[ToolDescriptor]) -> List[ToolDescriptor]:
    """Cheap lexical filter so the tool catalog is only injected when it looks useful."""
    if not tools or not has_tool_intent(prompt):
        return []
    words = [w for w in prompt.lower().split() if len(w) > MIN_TOKEN_LEN]
    selected = []
    for tool in tools:
        haystack = " ".join([tool.name, tool.description, tool.server, *tool.schema_keys()]).lower()
        if any(word in haystack for word in words):
            selected.append(tool)
    return selected


def append_tools_to_prompt(prompt: str, tools: Sequence[ToolDescriptor]) -> str:
    if not tools:
        return prompt
    lines = []
    for tool in tools:
        schema = f" Args: {json.dumps(tool.input_schema, separators=(',', ':'))}" if tool.input_schema else ""
        lines.append(f"- {tool.server}.{tool.name}: {tool.description}{schema}")
    listing = "\n".join(lines)
    return (
        f"{prompt}\n\n[CONTEXT: The following MCP tools are available to you in this session]\n"
        f"{listing}\n\n{TOOL_INSTRUCTIONS}"
    )


def resolve_tool(name: str, tools: Sequence[ToolDescriptor]) -> Optional[ToolDescriptor]:
    server, _, tool_name = name.rpartition(".")
    if server:
        for tool in tools:
            if tool.server == server and tool.name == tool_name:
                return tool
    return next((t for t in tools if t.name in (name, tool_name)), None)


def parse_tool_calls(
    text: str, tools: Sequence[ToolDescriptor]
) -> Tuple[List[Tuple[ToolDescriptor, ToolCallInvocation]], List[str]]:
    """Return resolved calls plus the raw fenced blocks that produced at least one of them.

    Blocks that do not parse, and entries naming no selected tool, are ignored.
    """
    calls: List[Tuple[ToolDescriptor, ToolCallInvocation]] = []
    matched_blocks: List[str] = []
    for match in JSON_BLOCK_RE.finditer(text):
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            logger.debug("Ignoring unparseable json block in model output")
            continue
        entries = parsed if isinstance(parsed, list) else [parsed]
        block_calls = []
        for entry in entries:
            if not isinstance(entry, dict) or not isinstance(entry.get("tool"), str):
                continue
            if not isinstance(entry.get("arguments"), dict):
                continue
            try:
                invocation = ToolCallInvocation(tool=entry["tool"], arguments=entry["arguments"])
            except ValidationError:
                continue
            tool = resolve_tool(invocation.tool, tools)
            if tool is not None:
                block_calls.append((tool, invocation))
        if block_calls:
            calls.extend(block_calls)
            matched_blocks.append(match.group(0))
    return calls, matched_blocks


def continuation_prompt(original: str, trace: str) -> str:
    return f"Original Request: {original}\n\n[CONTEXT - PREVIOUS TOOL OUTPUTS]:\n{trace}\n\n{CONTINUATION_INSTRUCTION}"


async def generate(
    request: GenerationRequest,
    backend: ModelBackend,
    invoker: Optional[ToolExecutor] = None,
    max_loops: int = MAX_TOOL_LOOPS,
) -> str:
    """Drive one model through the bounded tool loop and return the visible text.

    Backend errors propagate, except a context overflow which comes back as text.
    """
    tools = filter_relevant_tools(request.prompt_text, request.active_tools) if invoker else []
    prompt = append_tools_to_prompt(request.prompt_text, tools)
    combined = ""
    trace = ""
    for iteration in range(max_loops):
        try:
            text = await backend.call(
                request.model_id,
                prompt,
                request.attachments if iteration == 0 else [],
                request.system_instruction,
                request.history,
            )
        except ContextWindowExceeded as exc:
            logger.warning("Context exceeded for %s: %s", request.model_id, exc)
            return combined + exc.user_message
        calls, blocks = parse_tool_calls(text, tools) if tools else ([], [])
        if not calls:
            combined += text
            break
        outputs = await asyncio.gather(*(invoker.execute(tool, call.arguments) for tool, call in calls))
        clean = text
        for block in blocks:
            clean = clean.replace(block, "", 1)
        step_trace = ""
        for (tool, _), output in zip(calls, outputs):
            clean += f"\n\n```mcp:{tool.name}\n{output}\n```"
            step_trace += f"Tool Call: {tool.name}\nOutput: {output}\n\n"
        combined += clean.strip() + "\n\n"
        trace += step_trace
        prompt = continuation_prompt(request.prompt_text, trace)
        logger.info("Model %s tool loop %s ran %s tool call(s)", request.model_id, iteration + 1, len(calls))
    return combined
