from typing import Any, Dict, List, Optional

import httpx

TAVILY_BASE_URL = "https://api.tavily.com"
MAX_EXTRACT_CHARS = 8000


class TavilyClient:
    """Search and page-extraction backend for the web tools."""

    def __init__(self, api_key: Optional[str], base_url: str = TAVILY_BASE_URL):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, max_results: int = 5, search_depth: str = "basic") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload = {"query": query, "search_depth": search_depth, "max_results": max_results}
        return await self._post("/search", payload)

    async def extract(self, urls: List[str], extract_depth: str = "basic") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        return await self._post("/extract", {"urls": urls, "extract_depth": extract_depth})

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def format_search_results(data: Dict[str, Any]) -> str:
    results = data.get("results") or []
    if not results:
        return "No results found."
    lines = []
    for i, item in enumerate(results, start=1):
        title = item.get("title") or item.get("url") or "(untitled)"
        snippet = (item.get("content") or "").strip()
        lines.append(f"{i}. **{title}**\n   {snippet}\n   {item.get('url') or ''}")
    return "\n\n".join(lines)


def format_extract(data: Dict[str, Any]) -> Optional[str]:
    results = data.get("results") or []
    if not results:
        return None
    text = (results[0].get("raw_content") or "").strip()
    if len(text) > MAX_EXTRACT_CHARS:
        text = text[:MAX_EXTRACT_CHARS] + "\n\n[truncated]"
    return text or None


def describe_error(data: Dict[str, Any]) -> str:
    error = data.get("error")
    if error == "missing_api_key":
        return "Web access is not configured. TAVILY_API_KEY is required."
    if error == "http_status":
        return f"Web API error ({data.get('status_code')}): {data.get('detail')}"
    return f"Web request failed: {data.get('detail') or error}"
