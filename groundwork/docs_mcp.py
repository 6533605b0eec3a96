import json
from typing import Any, Dict, List, Optional

from .providers import CapabilityError, ProviderClient

SEARCH_TOOL = "search_docs"


def _text_blocks(content: Any) -> List[Any]:
    """Flatten MCP content blocks; JSON text blocks are decoded."""
    out: List[Any] = []
    for block in content or []:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text") or ""
        try:
            out.append(json.loads(text))
        except ValueError:
            out.append(text)
    return out


class DocsMCPClient(ProviderClient):
    """Documentation search through an MCP HTTP proxy."""

    name = "docs_search"

    def __init__(self, base_url: Optional[str], token: Optional[str] = None, timeout: float = 30):
        super().__init__(base_url, token=token, timeout=timeout)

    async def search(self, query: str, top_k: int = 5) -> Dict[str, Any]:
        resp = await self._request(
            "POST",
            "/tools/call",
            json={"name": SEARCH_TOOL, "arguments": {"query": query, "top_k": top_k}},
        )
        data = resp.json()
        result = data.get("result", data) if isinstance(data, dict) else data
        if isinstance(result, dict) and result.get("isError"):
            raise CapabilityError(f"docs search failed: {_text_blocks(result.get('content'))}")
        if isinstance(result, dict) and "content" in result:
            return {"query": query, "results": _text_blocks(result["content"])}
        return {"query": query, "results": result}
