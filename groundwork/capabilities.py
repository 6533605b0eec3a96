import logging
import time
from enum import Enum
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from .browser import BrowserRenderClient
from .db import Database, record_audit
from .docs_mcp import DocsMCPClient
from .events import EventSink, emit_to
from .github import GitHubClient
from .providers import CapabilityError
from .retrieval import KnowledgeRetriever
from .sandbox import SandboxClient
from .schemas import CapabilityCall, InvocationResult

logger = logging.getLogger("uvicorn.error")

__all__ = ["Capability", "CapabilityDispatcher", "CapabilityError", "CapabilityArgs", "describe_capabilities"]

NOT_FOUND = "not found"


class UnknownCapability(CapabilityError):
    """The plan named a capability outside the fixed map."""


class Capability(str, Enum):
    GITHUB_API = "github_api"
    SANDBOX = "sandbox"
    BROWSER = "browser"
    DOCS_SEARCH = "docs_search"
    RAG_TOOL = "rag_tool"


class _Args(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GitHubArgs(_Args):
    capability: Literal["github_api"] = "github_api"
    operation: Literal["search_repos", "search_issues", "get_file_content", "get_repo_contents", "get_pr_diff"]
    query: Optional[str] = None
    language: Optional[str] = None
    repo: Optional[str] = None
    owner: Optional[str] = None
    path: str = ""
    pr_number: Optional[int] = Field(default=None, validation_alias=AliasChoices("pr_number", "prNumber", "pull_number"))
    limit: int = Field(default=5, ge=1, le=50)

    @model_validator(mode="after")
    def _check_operation(self) -> "GitHubArgs":
        if self.operation in ("search_repos", "search_issues"):
            if not (self.query or "").strip():
                raise ValueError(f"{self.operation} requires 'query'")
            return self
        if not self.owner and self.repo and "/" in self.repo:
            self.owner, self.repo = self.repo.split("/", 1)
        if not self.owner or not self.repo:
            raise ValueError(f"{self.operation} requires 'owner' and 'repo'")
        if self.operation == "get_file_content" and not self.path:
            raise ValueError("get_file_content requires 'path'")
        if self.operation == "get_pr_diff" and self.pr_number is None:
            raise ValueError("get_pr_diff requires 'pr_number'")
        return self


class SandboxArgs(_Args):
    capability: Literal["sandbox"] = "sandbox"
    command: Optional[str] = None
    filename: Optional[str] = None
    code: Optional[str] = None
    sandbox_id: str = Field(default="default", validation_alias=AliasChoices("sandbox_id", "sandboxId"))

    @model_validator(mode="after")
    def _check_mode(self) -> "SandboxArgs":
        if self.command:
            return self
        if self.filename and self.code:
            return self
        raise ValueError("sandbox requires either 'command' or both 'filename' and 'code'")


class BrowserArgs(_Args):
    capability: Literal["browser"] = "browser"
    action: Literal["scrape", "screenshot", "pdf", "snapshot", "json", "links", "markdown"] = "scrape"
    url: Optional[str] = None
    html: Optional[str] = None
    elements: Optional[List[Dict[str, Any]]] = None
    prompt: Optional[str] = None

    @model_validator(mode="after")
    def _check_source(self) -> "BrowserArgs":
        if not self.url and not self.html:
            raise ValueError("browser requires 'url' or 'html'")
        if self.action == "scrape" and not self.elements:
            raise ValueError("browser scrape requires an 'elements' list")
        return self


class DocsSearchArgs(_Args):
    capability: Literal["docs_search"] = "docs_search"
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=20, validation_alias=AliasChoices("top_k", "topK"))


class RagArgs(_Args):
    capability: Literal["rag_tool"] = "rag_tool"
    query: str = Field(min_length=1)


CapabilityArgs = Annotated[
    Union[GitHubArgs, SandboxArgs, BrowserArgs, DocsSearchArgs, RagArgs],
    Field(discriminator="capability"),
]
_ARGS_ADAPTER: TypeAdapter = TypeAdapter(CapabilityArgs)

ARG_MODELS = {
    Capability.GITHUB_API: GitHubArgs,
    Capability.SANDBOX: SandboxArgs,
    Capability.BROWSER: BrowserArgs,
    Capability.DOCS_SEARCH: DocsSearchArgs,
    Capability.RAG_TOOL: RagArgs,
}
ARG_MODELS_TAGS = {cap.value for cap in Capability}
DESCRIPTIONS = {
    Capability.GITHUB_API: "GitHub REST API adapter for repository, issue, file and pull request lookups.",
    Capability.SANDBOX: "Run a shell command or a short script in an isolated sandbox.",
    Capability.BROWSER: "Headless browser rendering: scrape, screenshot, pdf, snapshot, json, links, markdown.",
    Capability.DOCS_SEARCH: "Search product documentation through the docs MCP server.",
    Capability.RAG_TOOL: "Search the curated knowledge base.",
}


def resolve_capability(name: str) -> Optional[Capability]:
    try:
        return Capability(str(name or "").strip())
    except ValueError:
        return None


def parse_arguments(capability: Capability, arguments: Dict[str, Any]) -> Any:
    return _ARGS_ADAPTER.validate_python({**arguments, "capability": capability.value})


def describe_capabilities() -> List[Dict[str, Any]]:
    return [
        {
            "name": cap.value,
            "description": DESCRIPTIONS[cap],
            "arguments": ARG_MODELS[cap].model_json_schema(),
        }
        for cap in Capability
    ]


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ARG_MODELS_TAGS)
        msg = err.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


class CapabilityDispatcher:
    """Run plan invocations strictly in order against a fixed adapter map.

    A failing invocation only fills its own result slot with ``{"error": ...}``;
    the remaining invocations still run.
    """

    def __init__(
        self,
        db: Database,
        github: GitHubClient,
        sandbox: SandboxClient,
        browser: BrowserRenderClient,
        docs: DocsMCPClient,
        retriever: KnowledgeRetriever,
    ):
        self.db = db
        self.github = github
        self.sandbox = sandbox
        self.browser = browser
        self.docs = docs
        self.retriever = retriever
        self._adapters: Dict[Capability, Callable[[Any], Awaitable[Any]]] = {
            Capability.GITHUB_API: self._run_github,
            Capability.SANDBOX: self._run_sandbox,
            Capability.BROWSER: self._run_browser,
            Capability.DOCS_SEARCH: self._run_docs,
            Capability.RAG_TOOL: self._run_rag,
        }

    async def invoke(self, call: CapabilityCall) -> Any:
        capability = resolve_capability(call.capability)
        if capability is None:
            raise UnknownCapability(NOT_FOUND)
        try:
            args = parse_arguments(capability, call.arguments)
        except ValidationError as exc:
            raise CapabilityError(f"invalid arguments for {capability.value}: {_validation_summary(exc)}") from exc
        return await self._adapters[capability](args)

    async def run(
        self,
        invocations: Sequence[CapabilityCall],
        session_key: str,
        sink: Optional[EventSink] = None,
    ) -> List[InvocationResult]:
        results: List[InvocationResult] = []
        for index, call in enumerate(invocations):
            await emit_to(sink, "tool_start", {"index": index, "tool": call.capability, "args": call.arguments})
            started = time.perf_counter()
            error_message: Optional[str] = None
            try:
                result = await self.invoke(call)
            except UnknownCapability:
                error_message = NOT_FOUND
                result = {"error": NOT_FOUND}
            except Exception as exc:
                error_message = str(exc) or exc.__class__.__name__
                result = {"error": error_message}
                logger.warning("Capability %s failed: %s", call.capability, error_message)
            duration_ms = int((time.perf_counter() - started) * 1000)
            await record_audit(
                self.db,
                session_key,
                f"TOOL:{call.capability}",
                {"args": call.arguments, "result": result},
                status="ERROR" if error_message else "SUCCESS",
                error_message=error_message,
                duration_ms=duration_ms,
            )
            results.append(InvocationResult(capability=call.capability, result=result))
            await emit_to(
                sink,
                "tool_end",
                {
                    "index": index,
                    "tool": call.capability,
                    "ok": error_message is None,
                    "result": result,
                    "duration_ms": duration_ms,
                },
            )
        return results

    async def _run_github(self, args: GitHubArgs) -> Any:
        if args.operation == "search_repos":
            return await self.github.search_repos(args.query or "", language=args.language, limit=args.limit)
        if args.operation == "search_issues":
            return await self.github.search_issues(args.query or "", repo=args.repo, limit=args.limit)
        if args.operation == "get_file_content":
            return await self.github.get_file_content(args.owner, args.repo, args.path)
        if args.operation == "get_repo_contents":
            return await self.github.get_repo_contents(args.owner, args.repo, args.path)
        return await self.github.get_pr_diff(args.owner, args.repo, args.pr_number)

    async def _run_sandbox(self, args: SandboxArgs) -> Any:
        if args.command:
            return await self.sandbox.exec(args.command, sandbox_id=args.sandbox_id)
        return await self.sandbox.run_script(args.filename, args.code, sandbox_id=args.sandbox_id)

    async def _run_browser(self, args: BrowserArgs) -> Any:
        return await self.browser.render(
            args.action, url=args.url, html=args.html, elements=args.elements, prompt=args.prompt
        )

    async def _run_docs(self, args: DocsSearchArgs) -> Any:
        return await self.docs.search(args.query, top_k=args.top_k)

    async def _run_rag(self, args: RagArgs) -> Any:
        return await self.retriever.search(args.query)
