import json

import httpx
import pytest
import respx

from app.search import (
    PAGE_SIZE,
    AzureSearchClient,
    SearchError,
    SearchRecord,
    SearchService,
    literal_search,
    render_results,
    sanitize,
)
from app.schemas import DatabaseSource
from tests.fakes import FakeBackend


def _csv(rows: int) -> DatabaseSource:
    lines = ["id,name"] + [f"{i},Customer {i}" for i in range(rows)]
    return DatabaseSource(id="csv", name="Customers", type="csv_upload", content="\n".join(lines))


AZURE = DatabaseSource(
    id="idx",
    name="Policies",
    type="azure_ai_search",
    azure_endpoint="https://search.test/",
    azure_index_name="policies",
    azure_content_field="chunk",
    azure_title_field="title",
    azure_vector_field="vector",
    azure_embedding_model="azure-text-embedding-ada-002",
    azure_search_key="search-key",
)


def test_literal_search_skips_csv_header_and_ignores_case():
    source = _csv(3)
    assert [r.content for r in literal_search(source, "CUSTOMER 1")] == ["1,Customer 1"]
    assert literal_search(source, "name") == []
    manual = DatabaseSource(id="m", name="Notes", content="alpha\n\nbeta\nAlphabet")
    assert [r.content for r in literal_search(manual, "alpha")] == ["alpha", "Alphabet"]


def test_sanitize_strips_leading_noise():
    record = sanitize(SearchRecord(content="12 |\tRefund\npolicy applies", title="Handbook"))
    assert record.content == "Refund policy applies"
    assert record.title == "Handbook"


def test_render_results_caps_table_and_counts_rest():
    source = _csv(15)
    records = literal_search(source, "customer")
    content = render_results(source, "customer", records)
    assert "Found 15 records" in content
    assert "| Index | Record Content |" in content
    assert f"| {PAGE_SIZE} |" in content
    assert f"| {PAGE_SIZE + 1} |" not in content
    assert content.endswith("*...and 5 more records available.*")


def test_render_results_titles_and_empty():
    source = _csv(0)
    assert render_results(source, "x", []).endswith("*No matching records were found.*")
    content = render_results(AZURE, "q", [SearchRecord(content="Text | pipe", title="Doc")])
    assert "| 1 | **Doc** | Text \\| pipe |" in content


def test_load_more_pages_literal_results():
    service = SearchService()
    source = _csv(25)
    records = literal_search(source, "customer")
    first = service.results_message(source, "customer", records, step_index=2)
    assert first.search_metadata.offset == PAGE_SIZE
    assert first.workflow_step_index == 2

    second = service.load_more(first, source)
    assert "(Records 11 - 20)" in second.content
    assert "| 11 | 10,Customer 10 |" in second.content
    assert second.content.endswith("*...and 5 more records available.*")

    third = service.load_more(second, source)
    assert "(Records 21 - 25)" in third.content
    assert third.content.endswith("*All matching records have been loaded.*")
    assert service.load_more(third, source) is None


@pytest.mark.asyncio
async def test_search_service_requires_index_client_for_vector_sources():
    with pytest.raises(SearchError):
        await SearchService().search(AZURE, "refunds")


@pytest.mark.asyncio
async def test_azure_search_hybrid_query():
    client = httpx.AsyncClient()
    backend = FakeBackend()
    index = AzureSearchClient(backend, client=client)
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"value": [{"chunk": "Refunds within 30 days", "title": "Policy"}, {"title": "no content"}]},
        )

    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(url__startswith="https://search.test/indexes/policies/docs/search").mock(side_effect=handler)
            records = await SearchService(index).search(AZURE, "refunds")
    finally:
        await index.close()

    assert records == [SearchRecord(content="Refunds within 30 days", title="Policy")]
    assert "api-version=2023-11-01" in seen["url"]
    assert seen["key"] == "search-key"
    body = seen["body"]
    assert body["search"] == "refunds"
    assert body["top"] == 5
    assert body["select"] == "chunk,title"
    assert body["vectorQueries"] == [{"kind": "vector", "vector": [0.1, 0.2, 0.3], "fields": "vector", "k": 5}]
    assert backend.embed_calls == [{"model": "azure-text-embedding-ada-002", "text": "refunds"}]


@pytest.mark.asyncio
async def test_azure_search_errors():
    client = httpx.AsyncClient()
    index = AzureSearchClient(FakeBackend(), client=client)
    incomplete = AZURE.model_copy(update={"azure_search_key": None})
    try:
        with pytest.raises(SearchError, match="azure_search_key"):
            await index.search(incomplete, "q")
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(url__startswith="https://search.test/").mock(
                return_value=httpx.Response(403, json={"error": {"message": "Forbidden key"}})
            )
            with pytest.raises(SearchError, match="Forbidden key"):
                await index.search(AZURE, "q")
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_azure_count_tolerates_bom():
    client = httpx.AsyncClient()
    index = AzureSearchClient(FakeBackend(), client=client)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(url__startswith="https://search.test/indexes/policies/docs/$count").mock(
                return_value=httpx.Response(200, content="\ufeff128".encode("utf-8"))
            )
            assert await index.count(AZURE) == 128
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_azure_count_wraps_transport_and_parse_errors():
    client = httpx.AsyncClient()
    index = AzureSearchClient(FakeBackend(), client=client)
    try:
        count_url = "https://search.test/indexes/policies/docs/$count"
        with respx.mock() as respx_mock:
            respx_mock.get(url__startswith=count_url).mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(SearchError, match="request failed"):
                await index.count(AZURE)
        with respx.mock() as respx_mock:
            respx_mock.get(url__startswith=count_url).mock(return_value=httpx.Response(200, text="not-a-number"))
            with pytest.raises(SearchError, match="invalid count"):
                await index.count(AZURE)
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_service_count_uses_rows_or_index():
    assert await SearchService().count(_csv(4)) == 4
    with pytest.raises(SearchError):
        await SearchService().count(AZURE)
