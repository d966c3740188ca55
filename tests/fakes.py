import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from app.schemas import AttachedFile, DatabaseSource, Message, ToolDescriptor


Reply = Union[str, Exception, Callable[[str], str]]


class FakeBackend:
    """Scripted model backend: each model id pops replies in order, repeating the last one."""

    def __init__(
        self,
        replies: Optional[Dict[str, List[Reply]]] = None,
        default: Reply = "ok",
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.replies = {k: list(v) for k, v in (replies or {}).items()}
        self.default = default
        self.delays = delays or {}
        self.calls: List[Dict[str, Any]] = []
        self.embed_calls: List[Dict[str, Any]] = []
        self.configured = 0
        self.closed = False

    def _next(self, model_id: str) -> Reply:
        queue = self.replies.get(model_id)
        if not queue:
            return self.default
        if len(queue) == 1:
            return queue[0]
        return queue.pop(0)

    async def call(
        self,
        model_id: str,
        prompt: str,
        attachments: Sequence[AttachedFile],
        system_instruction: Optional[str] = None,
        history: Sequence[Message] = (),
    ) -> str:
        self.calls.append(
            {
                "model": model_id,
                "prompt": prompt,
                "attachments": list(attachments),
                "system": system_instruction,
                "history": list(history),
            }
        )
        delay = self.delays.get(model_id)
        if delay:
            await asyncio.sleep(delay)
        reply = self._next(model_id)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    async def embed(self, model_id: str, text: str) -> List[float]:
        self.embed_calls.append({"model": model_id, "text": text})
        return [0.1, 0.2, 0.3]

    def configure(self, settings: Any) -> None:
        self.configured += 1

    async def close(self) -> None:
        self.closed = True


class FakeToolInvoker:
    def __init__(self, tools: Optional[List[ToolDescriptor]] = None, outputs: Optional[Dict[str, Any]] = None) -> None:
        self.tools = {"fake": list(tools or [])}
        self.outputs = outputs or {}
        self.servers: List[Any] = []
        self.calls: List[Dict[str, Any]] = []
        self.timeout_s = 15.0
        self.discovered = 0

    def all_tools(self) -> List[ToolDescriptor]:
        return [t for tools in self.tools.values() for t in tools]

    async def execute(self, tool: ToolDescriptor, arguments: Dict[str, Any]) -> str:
        self.calls.append({"tool": tool.name, "arguments": arguments})
        output = self.outputs.get(tool.name, {"content": [{"type": "text", "text": f"{tool.name} result"}]})
        return json.dumps(output, indent=2)

    def configure(self, servers: List[Any], timeout_s: float) -> None:
        self.servers = list(servers)
        self.timeout_s = timeout_s

    async def discover(self) -> Dict[str, List[ToolDescriptor]]:
        self.discovered += 1
        return self.tools

    async def close(self) -> None:
        return None


class FakeScraper:
    def __init__(self, content: str = "Source: http://example.com\n\n**Main Content:**\n\nHello page") -> None:
        self.endpoint = "http://scraper.test"
        self.content = content
        self.calls: List[Dict[str, Any]] = []

    async def scrape_text(self, url: str, include_meta: bool = False) -> str:
        self.calls.append({"url": url, "include_meta": include_meta})
        return self.content

    async def close(self) -> None:
        return None


class FakeIndexClient:
    def __init__(
        self,
        records: Optional[List[Dict[str, Any]]] = None,
        error: Optional[Exception] = None,
        total: Optional[int] = None,
    ) -> None:
        self.records = records or []
        self.error = error
        self.total = total
        self.calls: List[Dict[str, Any]] = []

    async def search(self, source: DatabaseSource, query: str, top: int = 5):
        from app.search import SearchRecord

        self.calls.append({"source": source.id, "query": query})
        if self.error:
            raise self.error
        return [SearchRecord(**r) for r in self.records]

    async def count(self, source: DatabaseSource) -> int:
        self.calls.append({"source": source.id, "count": True})
        if self.error:
            raise self.error
        return len(self.records) if self.total is None else self.total

    async def close(self) -> None:
        return None


def make_tool(name: str, server: str = "crm", description: str = "", properties: Optional[List[str]] = None) -> ToolDescriptor:
    schema = {"type": "object", "properties": {p: {"type": "string"} for p in properties or []}} if properties else None
    return ToolDescriptor(id=name, name=name, server=server, description=description, input_schema=schema)
