import posixpath
from typing import Any, Dict, Optional

from .providers import CapabilityError, ProviderClient

RUNNERS = {
    ".py": "python3",
    ".js": "node",
    ".mjs": "node",
    ".ts": "npx tsx",
    ".sh": "sh",
}


class SandboxClient(ProviderClient):
    """Command and script execution against the sandbox service."""

    name = "sandbox"

    def __init__(self, base_url: Optional[str], token: Optional[str] = None, timeout: float = 120):
        super().__init__(base_url, token=token, timeout=timeout)

    async def exec(self, command: str, sandbox_id: str = "default") -> Dict[str, Any]:
        resp = await self._request("POST", f"/sandboxes/{sandbox_id}/exec", json={"command": command})
        data = resp.json()
        return {
            "stdout": data.get("stdout", ""),
            "stderr": data.get("stderr", ""),
            "exit_code": data.get("exitCode", data.get("exit_code")),
            "success": data.get("success", data.get("exitCode", data.get("exit_code")) == 0),
        }

    async def write_file(self, path: str, content: str, sandbox_id: str = "default") -> None:
        await self._request("POST", f"/sandboxes/{sandbox_id}/files", json={"path": path, "content": content})

    async def run_script(self, filename: str, code: str, sandbox_id: str = "default") -> Dict[str, Any]:
        ext = posixpath.splitext(filename)[1].lower()
        runner = RUNNERS.get(ext)
        if not runner:
            raise CapabilityError(f"no runner for '{filename}'; supported: {', '.join(sorted(RUNNERS))}")
        await self.write_file(filename, code, sandbox_id=sandbox_id)
        result = await self.exec(f"{runner} {filename}", sandbox_id=sandbox_id)
        result["filename"] = filename
        return result
