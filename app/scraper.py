from typing import Any, Dict, List, Optional

import httpx


class WebScraperClient:
    def __init__(self, endpoint: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.endpoint = endpoint
        self.client = client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    async def scrape(self, url: str, include_meta: bool = False) -> Dict[str, Any]:
        """Fetch page content; failures come back as an error dict like the other clients."""
        if not self.enabled:
            return {"error": "missing_endpoint", "detail": "Web scraper endpoint not configured"}
        try:
            resp = await self.client.get(
                self.endpoint,
                params={"query": url, "meta": "true" if include_meta else "false"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            return {"error": "http_status", "status_code": e.response.status_code, "detail": f"HTTP {e.response.status_code}"}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e) or e.__class__.__name__}
        except ValueError as e:
            return {"error": "invalid_response", "detail": str(e)}
        if not isinstance(data, list):
            data = [data] if isinstance(data, dict) else []
        return {"results": data}

    async def scrape_text(self, url: str, include_meta: bool = False) -> str:
        data = await self.scrape(url, include_meta)
        if data.get("error"):
            return f"Error scraping {url}: {data.get('detail') or data['error']}. (CORS restrictions may apply)"
        return format_scrape_results(data.get("results") or [], include_meta)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def format_scrape_results(results: List[Dict[str, Any]], include_meta: bool = False) -> str:
    blocks = []
    for item in results:
        if not isinstance(item, dict):
            continue
        block = f"Source: {item.get('url', '')}\n\n**Main Content:**\n\n{item.get('content') or ''}"
        meta = item.get("meta")
        if include_meta and isinstance(meta, dict):
            block += "\n\nMetadata:\n"
            if meta.get("description"):
                block += f"- Description: {meta['description']}\n"
            if meta.get("image"):
                block += f"- Image: {meta['image']}\n"
        blocks.append(block)
    return "\n\n---\n\n".join(blocks)


def is_scrape_error(text: str) -> bool:
    return text.startswith("Error scraping ")
