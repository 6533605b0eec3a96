from typing import Any, Dict, Optional

import httpx


class CapabilityError(RuntimeError):
    """A capability provider rejected the call or could not be reached."""


class ProviderClient:
    """Shared httpx plumbing for the capability providers."""

    name = "provider"

    def __init__(self, base_url: Optional[str], token: Optional[str] = None, timeout: float = 60):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        # Shared pool so sequential invocations reuse connections.
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        if not self.enabled:
            raise CapabilityError(f"{self.name} is not configured")
        merged = {**self._headers(), **(headers or {})}
        try:
            resp = await self.client.request(method, f"{self.base_url}{path}", json=json, params=params, headers=merged)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            raise CapabilityError(
                f"{self.name} request to {path} failed with status {e.response.status_code}: {detail}"
            ) from e
        except httpx.RequestError as e:
            raise CapabilityError(f"{self.name} request to {path} failed: {e}") from e
        return resp

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
