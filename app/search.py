import logging
import re
import uuid
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from .backends import BackendError, BackendRegistry
from .schemas import DatabaseSource, Message, SearchMetadata


logger = logging.getLogger("uvicorn.error")

PAGE_SIZE = 10
VECTOR_TOP = 5
_WHITESPACE_RE = re.compile(r"[\r\n\t]+")
_FIRST_CAP_RE = re.compile(r"[A-Z]")


class SearchRecord(BaseModel):
    content: str
    title: Optional[str] = None


class SearchError(RuntimeError):
    pass


def data_rows(source: DatabaseSource) -> List[str]:
    rows = [line for line in source.content.split("\n") if line.strip()]
    if source.type == "csv_upload":
        return rows[1:]
    return rows


def literal_search(source: DatabaseSource, query: str) -> List[SearchRecord]:
    needle = query.lower()
    return [SearchRecord(content=row) for row in data_rows(source) if needle in row.lower()]


def sanitize(record: SearchRecord) -> SearchRecord:
    content = _WHITESPACE_RE.sub(" ", record.content).strip()
    # Drop leading noise such as ids or punctuation before the first capitalised word.
    match = _FIRST_CAP_RE.search(content)
    if match:
        content = content[match.start():]
    return SearchRecord(content=content, title=record.title)


def _cell(text: str) -> str:
    return text.replace("|", "\\|")


def render_results(source: DatabaseSource, query: str, records: List[SearchRecord]) -> str:
    content = (
        f"**Database Search Results**\nSource: {source.name}\nQuery: \"{query}\"\n"
        f"Found {len(records)} records. These are now part of the conversation context."
    )
    if not records:
        return content + "\n\n*No matching records were found.*"
    cleaned = [sanitize(r) for r in records]
    if any(r.title for r in cleaned):
        content += "\n\n| &nbsp; | Source Document | Record Content |\n| :--- | :--- | :--- |\n"
        for i, r in enumerate(cleaned[:PAGE_SIZE]):
            content += f"| {i + 1} | **{_cell(r.title or 'Unknown')}** | {_cell(r.content)} |\n"
    else:
        content += "\n\n| Index | Record Content |\n| :--- | :--- |\n"
        for i, r in enumerate(cleaned[:PAGE_SIZE]):
            content += f"| {i + 1} | {_cell(r.content)} |\n"
    if len(cleaned) > PAGE_SIZE:
        content += f"\n*...and {len(cleaned) - PAGE_SIZE} more records available.*"
    return content


class AzureSearchClient:
    """Hybrid keyword + vector query against an Azure AI Search index."""

    def __init__(
        self,
        backend: BackendRegistry,
        api_version: str = "2023-11-01",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.backend = backend
        self.api_version = api_version
        self.client = client or httpx.AsyncClient(timeout=30)

    def _base(self, source: DatabaseSource) -> str:
        missing = [
            name
            for name in ("azure_endpoint", "azure_search_key", "azure_index_name", "azure_content_field")
            if not getattr(source, name)
        ]
        if missing:
            raise SearchError(f"Search index source {source.name} is missing {', '.join(missing)}")
        return f"{source.azure_endpoint.rstrip('/')}/indexes/{source.azure_index_name}"

    async def search(self, source: DatabaseSource, query: str, top: int = VECTOR_TOP) -> List[SearchRecord]:
        base = self._base(source)
        body: Dict[str, Any] = {"search": query, "top": top}
        if source.azure_vector_field and source.azure_embedding_model:
            try:
                vector = await self.backend.embed(source.azure_embedding_model, query)
            except BackendError as exc:
                raise SearchError(str(exc)) from exc
            body["vectorQueries"] = [
                {"kind": "vector", "vector": vector, "fields": source.azure_vector_field, "k": top}
            ]
        fields = [source.azure_content_field]
        if source.azure_title_field:
            fields.append(source.azure_title_field)
        body["select"] = ",".join(fields)
        try:
            resp = await self.client.post(
                f"{base}/docs/search",
                params={"api-version": self.api_version},
                headers={"api-key": source.azure_search_key},
                json=body,
            )
        except httpx.RequestError as exc:
            raise SearchError(f"Azure AI Search request failed: {exc}") from exc
        if resp.status_code >= 400:
            message = None
            try:
                message = (resp.json().get("error") or {}).get("message")
            except Exception:
                pass
            raise SearchError(message or f"Azure AI Search Error: {resp.status_code} {resp.reason_phrase}")
        records = []
        for item in resp.json().get("value") or []:
            content = item.get(source.azure_content_field)
            if content is None:
                continue
            title = item.get(source.azure_title_field) if source.azure_title_field else None
            records.append(SearchRecord(content=str(content), title=title))
        return records

    async def count(self, source: DatabaseSource) -> int:
        base = self._base(source)
        try:
            resp = await self.client.get(
                f"{base}/docs/$count",
                params={"api-version": self.api_version},
                headers={"api-key": source.azure_search_key},
            )
        except httpx.RequestError as exc:
            raise SearchError(f"Azure AI Search request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise SearchError(f"Azure AI Search Count Error: {resp.status_code} {resp.reason_phrase}")
        try:
            return int(resp.text.strip().lstrip("\ufeff"))
        except ValueError as exc:
            raise SearchError(f"Azure AI Search returned an invalid count: {resp.text[:80]!r}") from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class SearchService:
    def __init__(self, index_client: Optional[AzureSearchClient] = None):
        self.index_client = index_client

    async def search(self, source: DatabaseSource, query: str) -> List[SearchRecord]:
        if source.type == "azure_ai_search":
            if self.index_client is None:
                raise SearchError("Vector search is not configured")
            records = await self.index_client.search(source, query)
        else:
            records = literal_search(source, query)
        logger.info("Search on %s for %r matched %s record(s)", source.name, query, len(records))
        return records

    async def count(self, source: DatabaseSource) -> int:
        if source.type == "azure_ai_search":
            if self.index_client is None:
                raise SearchError("Vector search is not configured")
            return await self.index_client.count(source)
        return len(data_rows(source))

    def results_message(
        self, source: DatabaseSource, query: str, records: List[SearchRecord], step_index: Optional[int]
    ) -> Message:
        return Message(
            id=uuid.uuid4().hex,
            role="user",
            is_system=True,
            content=render_results(source, query, records),
            search_metadata=SearchMetadata(
                database_id=source.id,
                search_query=query,
                offset=PAGE_SIZE,
                total_results=len(records),
            ),
            workflow_step_index=step_index,
        )

    def load_more(self, message: Message, source: DatabaseSource) -> Optional[Message]:
        """Next page of a literal search, or None once everything is shown."""
        meta = message.search_metadata
        if meta is None or meta.offset >= meta.total_results:
            return None
        rows = [r.content for r in literal_search(source, meta.search_query)]
        next_offset = meta.offset + PAGE_SIZE
        content = (
            f"**Additional Database Results** (Records {meta.offset + 1} - {min(next_offset, meta.total_results)})\n"
            f"Source: {source.name}\nQuery: \"{meta.search_query}\""
        )
        content += "\n\n| Index | Record Content |\n| :--- | :--- |\n"
        for i, row in enumerate(rows[meta.offset:next_offset]):
            content += f"| {meta.offset + i + 1} | {_cell(row)} |\n"
        if next_offset < meta.total_results:
            content += f"\n\n*...and {meta.total_results - next_offset} more records available.*"
        else:
            content += "\n\n*All matching records have been loaded.*"
        return Message(
            id=uuid.uuid4().hex,
            role="user",
            is_system=True,
            content=content,
            search_metadata=SearchMetadata(
                database_id=meta.database_id,
                search_query=meta.search_query,
                offset=next_offset,
                total_results=meta.total_results,
            ),
        )

    async def close(self) -> None:
        if self.index_client is not None:
            await self.index_client.close()
