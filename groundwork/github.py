import base64
import logging
from typing import Any, Dict, List, Optional

from .providers import CapabilityError, ProviderClient

logger = logging.getLogger("uvicorn.error")

USER_AGENT = "groundwork-research-assistant"
MAX_FILE_CHARS = 20000


class GitHubClient(ProviderClient):
    name = "github_api"

    def __init__(self, base_url: str = "https://api.github.com", token: Optional[str] = None, timeout: float = 30):
        super().__init__(base_url, token=token, timeout=timeout)
        if not token:
            logger.info("GITHUB_TOKEN is not set; GitHub requests are unauthenticated and rate-limited.")

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def search_repos(self, query: str, language: Optional[str] = None, limit: int = 5) -> List[Dict[str, Any]]:
        q = f"{query} language:{language}" if language else query
        resp = await self._request("GET", "/search/repositories", params={"q": q, "per_page": limit})
        items = resp.json().get("items") or []
        return [
            {
                "full_name": item.get("full_name"),
                "description": item.get("description"),
                "url": item.get("html_url"),
                "stars": item.get("stargazers_count"),
                "language": item.get("language"),
            }
            for item in items[:limit]
        ]

    async def search_issues(self, query: str, repo: Optional[str] = None, limit: int = 5) -> List[Dict[str, Any]]:
        q = f"{query} repo:{repo}" if repo else query
        resp = await self._request("GET", "/search/issues", params={"q": q, "per_page": limit})
        items = resp.json().get("items") or []
        return [
            {
                "title": item.get("title"),
                "number": item.get("number"),
                "state": item.get("state"),
                "url": item.get("html_url"),
            }
            for item in items[:limit]
        ]

    async def get_file_content(self, owner: str, repo: str, path: str) -> Dict[str, Any]:
        data = (await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}")).json()
        if not isinstance(data, dict) or data.get("type") != "file":
            raise CapabilityError(f"{owner}/{repo}/{path} is not a file")
        content = data.get("content") or ""
        if data.get("encoding") == "base64":
            content = base64.b64decode(content).decode("utf-8", errors="replace")
        return {
            "path": data.get("path", path),
            "size": data.get("size"),
            "content": content[:MAX_FILE_CHARS],
            "truncated": len(content) > MAX_FILE_CHARS,
        }

    async def get_repo_contents(self, owner: str, repo: str, path: str = "") -> List[Dict[str, Any]]:
        data = (await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}")).json()
        entries = data if isinstance(data, list) else [data]
        return [{"name": e.get("name"), "path": e.get("path"), "type": e.get("type")} for e in entries]

    async def get_pr_diff(self, owner: str, repo: str, pr_number: int) -> str:
        resp = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls/{pr_number}",
            headers={"Accept": "application/vnd.github.v3.diff"},
        )
        return resp.text
