import httpx
import pytest
import respx

from app.scraper import WebScraperClient, format_scrape_results, is_scrape_error


ENDPOINT = "http://scraper.test/scrape"


def test_format_scrape_results_with_meta():
    text = format_scrape_results(
        [
            {"url": "https://a.test", "content": "Alpha", "meta": {"description": "About A", "image": "https://a.test/i.png"}},
            {"url": "https://b.test", "content": "Beta"},
        ],
        include_meta=True,
    )
    first, second = text.split("\n\n---\n\n")
    assert first.startswith("Source: https://a.test\n\n**Main Content:**\n\nAlpha")
    assert "- Description: About A" in first
    assert "- Image: https://a.test/i.png" in first
    assert second == "Source: https://b.test\n\n**Main Content:**\n\nBeta"


@pytest.mark.asyncio
async def test_scrape_passes_url_and_meta_flag():
    client = httpx.AsyncClient()
    scraper = WebScraperClient(ENDPOINT, client=client)
    seen = {}

    def handler(request: httpx.Request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"url": "https://a.test", "content": "Alpha"})

    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(url__startswith=ENDPOINT).mock(side_effect=handler)
            text = await scraper.scrape_text("https://a.test")
    finally:
        await scraper.close()

    assert seen["params"] == {"query": "https://a.test", "meta": "false"}
    assert text == "Source: https://a.test\n\n**Main Content:**\n\nAlpha"


@pytest.mark.asyncio
async def test_scrape_failures_become_error_text():
    client = httpx.AsyncClient()
    scraper = WebScraperClient(ENDPOINT, client=client)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(url__startswith=ENDPOINT)
            route.side_effect = [httpx.Response(502, text="bad gateway"), httpx.ConnectError("refused")]
            status_error = await scraper.scrape_text("https://a.test")
            conn_error = await scraper.scrape("https://a.test")
    finally:
        await scraper.close()

    assert status_error == "Error scraping https://a.test: HTTP 502. (CORS restrictions may apply)"
    assert is_scrape_error(status_error)
    assert conn_error["error"] == "request_failed"


@pytest.mark.asyncio
async def test_missing_endpoint_reports_error():
    client = httpx.AsyncClient()
    scraper = WebScraperClient(None, client=client)
    try:
        text = await scraper.scrape_text("https://a.test")
    finally:
        await scraper.close()
    assert not scraper.enabled
    assert text.startswith("Error scraping https://a.test: Web scraper endpoint not configured")
