from __future__ import annotations

import json

from turnflow.core.errors import ToolExecutionError
from turnflow.domain.types import ToolSpecification
from turnflow.retrieval.base import ContentRetriever
from turnflow.tools.base import ToolProvider

WEB_SEARCH_PARAMETERS = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "Search terms."},
    },
    "required": ["query"],
}


class WebSearchToolProvider(ToolProvider):
    """Expose a web search retriever as a ``web_search`` tool."""

    name = "web-search"

    def __init__(self, retriever: ContentRetriever, tool_name: str = "web_search") -> None:
        self._retriever = retriever
        self._tool_name = tool_name

    async def describe(self) -> list[ToolSpecification]:
        return [
            ToolSpecification(
                name=self._tool_name,
                description="Search the web and return the most relevant result snippets.",
                parameters=WEB_SEARCH_PARAMETERS,
                executor=self,
            )
        ]

    async def execute(self, arguments: str) -> str:
        try:
            query = json.loads(arguments).get("query") if arguments.strip() else None
        except (ValueError, AttributeError) as exc:
            raise ToolExecutionError(
                "TOOL_ARGUMENTS_INVALID", "web_search expects a JSON object with a query."
            ) from exc
        if not isinstance(query, str) or not query.strip():
            return "Error: query is required."
        segments = await self._retriever.retrieve(query)
        if not segments:
            return "No results."
        blocks = []
        for segment in segments:
            title = segment.metadata.get("title") or segment.source or ""
            blocks.append(f"{title}\n{segment.source or ''}\n{segment.text}".strip())
        return "\n\n".join(blocks)

    async def close(self) -> None:
        await self._retriever.close()
