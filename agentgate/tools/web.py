"""Web access tools: search and fetch."""

from typing import Any, Dict

from ..registry import ToolContext, ToolRegistry
from ..schemas import ToolDefinition, ToolExecutionResult
from ..tavily import describe_error, format_extract, format_search_results


async def web_search(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    query = str(tool_input.get("query") or "").strip()
    if not query:
        return ToolExecutionResult(result="A search query is required.", is_error=True)
    tavily = ctx.services.get("tavily")
    if tavily is None:
        return ToolExecutionResult(result="Web search is not available.", is_error=True)
    data = await tavily.search(query, max_results=5)
    if data.get("error"):
        return ToolExecutionResult(result=describe_error(data), is_error=True)
    return ToolExecutionResult(result=format_search_results(data))


async def fetch_url(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    url = str(tool_input.get("url") or "").strip()
    if not url.startswith(("http://", "https://")):
        return ToolExecutionResult(result=f"Invalid URL: {url or '(empty)'}", is_error=True)
    tavily = ctx.services.get("tavily")
    if tavily is None:
        return ToolExecutionResult(result="URL fetching is not available.", is_error=True)
    data = await tavily.extract([url])
    if data.get("error"):
        return ToolExecutionResult(result=describe_error(data), is_error=True)
    text = format_extract(data)
    if text is None:
        return ToolExecutionResult(result=f"No readable content found at {url}.", is_error=True)
    return ToolExecutionResult(result=text)


def register_web_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolDefinition(
            name="web_search",
            description="Search the web. Returns top results with titles, snippets, and URLs.",
            input_schema={
                "type": "object",
                "properties": {"query": {"type": "string", "description": "The search query"}},
                "required": ["query"],
            },
        ),
        web_search,
    )
    registry.register(
        ToolDefinition(
            name="fetch_url",
            description="Fetch and extract the readable text content of a web page.",
            input_schema={
                "type": "object",
                "properties": {"url": {"type": "string", "description": "The URL to fetch"}},
                "required": ["url"],
            },
        ),
        fetch_url,
    )
