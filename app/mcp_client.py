import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import ToolServerConfig
from .schemas import ToolDescriptor


logger = logging.getLogger("uvicorn.error")

CALL_REQUEST_ID = 2
LIST_REQUEST_ID = 1


def _text_result(text: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def parse_event_stream(body: str, request_id: int) -> Optional[Dict[str, Any]]:
    """Pick the JSON-RPC response for request_id out of an SSE body."""
    for line in body.splitlines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        try:
            parsed = json.loads(line[5:].strip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and (parsed.get("id") == request_id or "result" in parsed):
            return parsed
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class ToolInvoker:
    def __init__(
        self,
        servers: Sequence[ToolServerConfig],
        timeout_s: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.servers = list(servers)
        self.timeout_s = timeout_s
        self.client = client or httpx.AsyncClient(
            timeout=timeout_s,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )
        self.tools: Dict[str, List[ToolDescriptor]] = {}

    def configure(self, servers: Sequence[ToolServerConfig], timeout_s: float) -> None:
        self.servers = list(servers)
        self.timeout_s = timeout_s
        names = {s.name for s in self.servers}
        self.tools = {name: tools for name, tools in self.tools.items() if name in names}

    def server_for(self, name: str) -> Optional[ToolServerConfig]:
        return next((s for s in self.servers if s.name == name), None)

    def all_tools(self) -> List[ToolDescriptor]:
        return [tool for tools in self.tools.values() for tool in tools]

    async def _rpc(self, url: str, method: str, params: Dict[str, Any], request_id: int) -> Dict[str, Any]:
        body = {"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}
        resp = await self.client.post(
            url,
            json=body,
            headers={"Accept": "application/json, text/event-stream"},
            timeout=self.timeout_s,
        )
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            data = parse_event_stream(resp.text, request_id)
            if data is None:
                raise ValueError("Received event stream but could not extract valid JSON-RPC response")
            return data
        data = resp.json()
        if isinstance(data, str):
            data = json.loads(data)
        return data

    async def call_tool(self, server_url: str, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await self._rpc(
                server_url, "tools/call", {"name": name, "arguments": arguments}, CALL_REQUEST_ID
            )
        except (httpx.HTTPError, ValueError) as exc:
            return _text_result(f"Tool call failed: {exc}")
        if data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else None
            return _text_result(f"Tool call error: {message or json.dumps(err)}")
        return data.get("result") or _text_result("Tool call returned no result.")

    async def execute(self, tool: ToolDescriptor, arguments: Dict[str, Any]) -> str:
        server = self.server_for(tool.server)
        if server is None:
            return json.dumps({"error": f"Server configuration not found for: {tool.server}"})
        try:
            result = await self.call_tool(server.url, tool.name, arguments)
            return json.dumps(result, indent=2)
        except Exception as exc:
            logger.warning("Tool %s.%s execution error: %s", tool.server, tool.name, exc)
            return json.dumps({"error": str(exc)})

    async def list_tools(self, server: ToolServerConfig) -> List[ToolDescriptor]:
        data = await self._rpc(server.url, "tools/list", {}, LIST_REQUEST_ID)
        raw_tools = (data.get("result") or {}).get("tools") or []
        return [
            ToolDescriptor(
                id=t["name"],
                name=t["name"],
                server=server.name,
                description=t.get("description") or "",
                input_schema=t.get("inputSchema"),
            )
            for t in raw_tools
            if isinstance(t, dict) and t.get("name")
        ]

    async def discover(self) -> Dict[str, List[ToolDescriptor]]:
        async def _one(server: ToolServerConfig) -> None:
            try:
                self.tools[server.name] = await self.list_tools(server)
            except Exception as exc:
                logger.warning("Error connecting to tool server %s: %s", server.name, exc)
                self.tools[server.name] = []

        await asyncio.gather(*(_one(s) for s in self.servers))
        return self.tools

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
