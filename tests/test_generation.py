import json

import pytest

from app.backends import CONTEXT_EXCEEDED_MESSAGE, BackendError, ContextWindowExceeded
from app.generation import (
    CONTINUATION_INSTRUCTION,
    TOOL_INSTRUCTIONS,
    filter_relevant_tools,
    generate,
    has_tool_intent,
    parse_tool_calls,
    resolve_tool,
)
from app.schemas import AttachedFile, GenerationRequest
from tests.fakes import FakeBackend, FakeToolInvoker, make_tool


LOOKUP = make_tool("lookup_customer", server="crm", description="Lookup customer records", properties=["customer"])
WEATHER = make_tool("forecast", server="weather", description="Weather forecast")


def _tool_reply(*calls):
    return "Checking database...\n```json\n" + json.dumps(list(calls)) + "\n```"


def test_relevance_filter_requires_action_keyword():
    assert not has_tool_intent("hello there")
    assert filter_relevant_tools("hello there customer", [LOOKUP]) == []


def test_relevance_filter_matches_long_tokens_only():
    assert filter_relevant_tools("please lookup the customer acme", [LOOKUP, WEATHER]) == [LOOKUP]
    # Tokens of three characters or fewer never match.
    assert filter_relevant_tools("get crm", [LOOKUP]) == []


def test_resolve_tool_prefers_server_qualified_name():
    other = make_tool("lookup_customer", server="billing")
    assert resolve_tool("billing.lookup_customer", [LOOKUP, other]) is other
    assert resolve_tool("lookup_customer", [LOOKUP, other]) is LOOKUP
    assert resolve_tool("unknown.tool", [LOOKUP]) is None


def test_parse_tool_calls_ignores_malformed_blocks():
    text = (
        "```json\nnot json\n```\n"
        "```json\n{\"tool\": \"crm.lookup_customer\", \"arguments\": {\"customer\": \"acme\"}}\n```\n"
        "```json\n[{\"tool\": \"crm.lookup_customer\", \"arguments\": \"bad\"}]\n```"
    )
    calls, blocks = parse_tool_calls(text, [LOOKUP])
    assert len(calls) == 1
    tool, invocation = calls[0]
    assert tool is LOOKUP
    assert invocation.arguments == {"customer": "acme"}
    assert len(blocks) == 1


@pytest.mark.asyncio
async def test_plain_answer_without_tools_makes_one_call():
    backend = FakeBackend(default="Hello!")
    request = GenerationRequest(model_id="m", prompt_text="hi", active_tools=[LOOKUP])
    assert await generate(request, backend, FakeToolInvoker([LOOKUP])) == "Hello!"
    assert len(backend.calls) == 1
    # No intent keyword, so the tool catalog is not injected.
    assert TOOL_INSTRUCTIONS not in backend.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_tool_loop_runs_tool_and_continues():
    backend = FakeBackend(
        replies={"m": [_tool_reply({"tool": "crm.lookup_customer", "arguments": {"customer": "acme"}}), "Acme has 3 orders."]}
    )
    invoker = FakeToolInvoker([LOOKUP])
    attachment = AttachedFile(id="f", name="a.txt", type="text/plain", base64="")
    request = GenerationRequest(
        model_id="m",
        prompt_text="lookup customer acme",
        active_tools=[LOOKUP],
        attachments=[attachment],
    )
    text = await generate(request, backend, invoker)

    assert invoker.calls == [{"tool": "lookup_customer", "arguments": {"customer": "acme"}}]
    assert "```json" not in text
    assert "```mcp:lookup_customer\n" in text
    assert text.endswith("Acme has 3 orders.")
    first, second = backend.calls
    assert "crm.lookup_customer" in first["prompt"]
    assert first["attachments"] == [attachment]
    assert second["attachments"] == []
    assert second["prompt"].startswith("Original Request: lookup customer acme")
    assert "Tool Call: lookup_customer" in second["prompt"]
    assert second["prompt"].endswith(CONTINUATION_INSTRUCTION)


@pytest.mark.asyncio
async def test_tool_loop_is_bounded():
    reply = _tool_reply({"tool": "crm.lookup_customer", "arguments": {}})
    backend = FakeBackend(default=reply)
    invoker = FakeToolInvoker([LOOKUP])
    request = GenerationRequest(model_id="m", prompt_text="lookup customer forever", active_tools=[LOOKUP])
    text = await generate(request, backend, invoker)
    assert len(backend.calls) == 5
    assert len(invoker.calls) == 5
    assert text.count("```mcp:lookup_customer") == 5


@pytest.mark.asyncio
async def test_unknown_tool_names_are_plain_text():
    reply = _tool_reply({"tool": "nowhere.nothing", "arguments": {}})
    backend = FakeBackend(default=reply)
    request = GenerationRequest(model_id="m", prompt_text="lookup customer acme", active_tools=[LOOKUP])
    text = await generate(request, backend, FakeToolInvoker([LOOKUP]))
    assert text == reply
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_multiple_calls_in_one_block_run_together():
    second = make_tool("list_orders", server="crm", description="List customer orders")
    backend = FakeBackend(
        replies={
            "m": [
                _tool_reply(
                    {"tool": "crm.lookup_customer", "arguments": {"customer": "acme"}},
                    {"tool": "crm.list_orders", "arguments": {"customer": "acme"}},
                ),
                "done",
            ]
        }
    )
    invoker = FakeToolInvoker([LOOKUP, second])
    request = GenerationRequest(model_id="m", prompt_text="list customer orders", active_tools=[LOOKUP, second])
    text = await generate(request, backend, invoker)
    assert [c["tool"] for c in invoker.calls] == ["lookup_customer", "list_orders"]
    assert text.index("```mcp:lookup_customer") < text.index("```mcp:list_orders")


@pytest.mark.asyncio
async def test_context_exceeded_keeps_partial_output():
    backend = FakeBackend(
        replies={"m": [_tool_reply({"tool": "crm.lookup_customer", "arguments": {}}), ContextWindowExceeded()]}
    )
    request = GenerationRequest(model_id="m", prompt_text="lookup customer acme", active_tools=[LOOKUP])
    text = await generate(request, backend, FakeToolInvoker([LOOKUP]))
    assert "```mcp:lookup_customer" in text
    assert text.endswith(CONTEXT_EXCEEDED_MESSAGE)


@pytest.mark.asyncio
async def test_backend_errors_propagate():
    backend = FakeBackend(default=BackendError("Azure Error: 500"))
    request = GenerationRequest(model_id="m", prompt_text="hi")
    with pytest.raises(BackendError):
        await generate(request, backend)
