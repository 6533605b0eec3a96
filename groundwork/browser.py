import base64
from typing import Any, Dict, List, Optional

from .providers import CapabilityError, ProviderClient

BINARY_ACTIONS = {"screenshot", "pdf"}
ACTIONS = {"scrape", "screenshot", "pdf", "snapshot", "json", "links", "markdown"}


class BrowserRenderClient(ProviderClient):
    """Headless rendering through the Browser Rendering REST API."""

    name = "browser"

    def __init__(
        self,
        account_id: Optional[str],
        api_token: Optional[str] = None,
        api_base: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 60,
    ):
        base = f"{api_base.rstrip('/')}/accounts/{account_id}/browser-rendering" if account_id else None
        super().__init__(base, token=api_token, timeout=timeout)
        self.account_id = account_id

    async def render(
        self,
        action: str,
        url: Optional[str] = None,
        html: Optional[str] = None,
        elements: Optional[List[Dict[str, Any]]] = None,
        prompt: Optional[str] = None,
    ) -> Any:
        if action not in ACTIONS:
            raise CapabilityError(f"unsupported browser action '{action}'")
        if not url and not html:
            raise CapabilityError("browser actions require a url or html source")
        body: Dict[str, Any] = {"url": url} if url else {"html": html}
        if action == "scrape":
            if not elements:
                raise CapabilityError("browser scrape requires an 'elements' list")
            body["elements"] = elements
        if action == "json" and prompt:
            body["prompt"] = prompt
        resp = await self._request("POST", f"/{action}", json=body)
        if action in BINARY_ACTIONS:
            return {
                "content_type": resp.headers.get("content-type", ""),
                "size": len(resp.content),
                "data_base64": base64.b64encode(resp.content).decode("ascii"),
            }
        data = resp.json()
        if isinstance(data, dict) and data.get("success") is False:
            raise CapabilityError(f"browser {action} failed: {data.get('errors')}")
        return data.get("result", data) if isinstance(data, dict) else data
