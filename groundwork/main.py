import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from qdrant_client import AsyncQdrantClient

from .answer import AnswerSynthesizer
from .browser import BrowserRenderClient
from .capabilities import CapabilityDispatcher, describe_capabilities
from .clarify import ClarificationGate
from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .db import Database
from .docs_mcp import DocsMCPClient
from .events import ProgressEmitter
from .github import GitHubClient
from .llm import ModelClient
from .orchestrator import SessionOrchestrator
from .planner import PlanSynthesizer
from .retrieval import KnowledgeBase, KnowledgeRetriever, VectorIndex
from .sandbox import SandboxClient
from .schemas import ChatRequest, KnowledgeRequest
from .session_store import KeyedLock, SessionStore

logger = logging.getLogger("uvicorn.error")

# Settings that the running orchestrator reads on every turn; everything else needs a restart.
RUNTIME_SETTINGS = {"transcript_max_messages", "max_clarification_rounds", "emit_rag_result", "retrieval_top_k"}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def get_emitter(request: Request) -> ProgressEmitter:
    return request.app.state.emitter


def get_knowledge_base(request: Request) -> KnowledgeBase:
    return request.app.state.knowledge


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


router = APIRouter()


async def _chat(session_id: str, query: str, orchestrator: SessionOrchestrator, emitter: ProgressEmitter) -> Dict[str, Any]:
    query = (query or "").strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required.")
    result = await orchestrator.handle_turn(session_id, query, sink=emitter.session_sink(session_id))
    return result.to_payload()


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    emitter: ProgressEmitter = Depends(get_emitter),
):
    session_id = (payload.session_id or "").strip() or uuid.uuid4().hex
    return await _chat(session_id, payload.query, orchestrator, emitter)


@router.post("/api/chat/{session_id}")
async def chat_session(
    session_id: str,
    payload: ChatRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    emitter: ProgressEmitter = Depends(get_emitter),
):
    return await _chat(session_id, payload.query, orchestrator, emitter)


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str, sessions: SessionStore = Depends(get_sessions)):
    if not await sessions.exists(session_id):
        raise HTTPException(status_code=404, detail="Session not found.")
    state = await sessions.load(session_id)
    return {"session": state.model_dump()}


@router.get("/api/sessions/{session_id}/audit")
async def get_session_audit(session_id: str, limit: int = 200, db: Database = Depends(get_db)):
    limit = max(1, min(limit, 1000))
    return {"sessionId": session_id, "events": await db.list_audit_events(session_id, limit=limit)}


@router.get("/api/capabilities")
async def list_capabilities():
    return {"capabilities": describe_capabilities()}


@router.post("/api/knowledge")
async def add_knowledge(payload: KnowledgeRequest, knowledge: KnowledgeBase = Depends(get_knowledge_base)):
    title = payload.title.strip()
    content = payload.content.strip()
    if not title or not content:
        raise HTTPException(status_code=400, detail="Title and content are required.")
    try:
        item_id = await knowledge.add(title, content, source_url=payload.source_url, tags=payload.tags)
    except Exception as exc:
        logger.warning("Indexing curated knowledge failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Indexing failed: {exc}") from exc
    return {"id": item_id}


@router.delete("/api/knowledge/{item_id}")
async def delete_knowledge(item_id: int, knowledge: KnowledgeBase = Depends(get_knowledge_base)):
    await knowledge.remove(item_id)
    return {"ok": True}


@router.get("/api/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object.")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False)) from exc
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    request.app.state.orchestrator.settings = new_settings
    request.app.state.retriever.top_k = new_settings.retrieval_top_k
    restart_needed = sorted(
        key for key in body if key not in RUNTIME_SETTINGS and getattr(settings, key, None) != getattr(new_settings, key, None)
    )
    return {"ok": True, "restart_required": restart_needed}


async def _send_result(websocket: WebSocket, payload: Dict[str, Any]) -> None:
    try:
        await websocket.send_json({"type": "result", "payload": payload})
    except Exception as exc:
        logger.info("Result not delivered, socket gone: %s", exc)


@router.websocket("/ws/{session_id}")
async def session_socket(websocket: WebSocket, session_id: str):
    app = websocket.app
    emitter: ProgressEmitter = app.state.emitter
    orchestrator: SessionOrchestrator = app.state.orchestrator
    turn_tasks: Set[asyncio.Task] = app.state.turn_tasks
    await websocket.accept()
    await emitter.attach(session_id, websocket)
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text") or ""
            try:
                message = json.loads(raw)
            except ValueError:
                message = {}
            query = str(message.get("query") or "").strip() if isinstance(message, dict) else ""
            if not query:
                await websocket.send_json({"type": "error", "payload": {"message": "Query is required."}})
                continue
            # The turn outlives the socket: a disconnect only stops event delivery.
            task = asyncio.create_task(orchestrator.handle_turn(session_id, query, sink=emitter.session_sink(session_id)))
            turn_tasks.add(task)
            task.add_done_callback(turn_tasks.discard)
            result = await asyncio.shield(task)
            await _send_result(websocket, result.to_payload())
    except WebSocketDisconnect:
        logger.info("WebSocket closed for session %s", session_id)
    finally:
        emitter.detach(session_id, websocket)


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    model_client: Optional[ModelClient] = None,
    vector_index: Optional[VectorIndex] = None,
    github: Optional[GitHubClient] = None,
    sandbox: Optional[SandboxClient] = None,
    browser: Optional[BrowserRenderClient] = None,
    docs: Optional[DocsMCPClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            await app.state.vector_index.ensure_collection()
        except Exception as exc:
            logger.warning("Vector index unavailable at startup; retrieval will fall back: %s", exc)
        try:
            yield
        finally:
            if app.state.turn_tasks:
                await asyncio.gather(*list(app.state.turn_tasks), return_exceptions=True)
            await app.state.model_client.close()
            await app.state.vector_index.close()
            for client in (app.state.github, app.state.sandbox, app.state.browser, app.state.docs):
                await client.close()

    app = FastAPI(title="Groundwork Research Assistant", lifespan=lifespan)
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.db = db or Database(settings.database_path)
    app.state.model_client = model_client or ModelClient(
        settings.model_base_url, max_output_tokens=settings.max_output_tokens
    )
    if vector_index is None:
        qdrant = (
            AsyncQdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
            if settings.qdrant_url
            else AsyncQdrantClient(location=":memory:")
        )
        vector_index = VectorIndex(
            qdrant,
            partial(app.state.model_client.embed, settings.embedding_model),
            collection=settings.qdrant_collection,
            dim=settings.embedding_dim,
        )
    app.state.vector_index = vector_index
    app.state.github = github or GitHubClient(settings.github_api_base, token=settings.github_token)
    app.state.sandbox = sandbox or SandboxClient(settings.sandbox_base_url)
    app.state.browser = browser or BrowserRenderClient(
        settings.browser_account_id, api_token=settings.browser_api_token, api_base=settings.browser_api_base
    )
    app.state.docs = docs or DocsMCPClient(settings.docs_mcp_base_url, token=settings.docs_mcp_token)

    app.state.sessions = SessionStore(app.state.db.path)
    app.state.retriever = KnowledgeRetriever(app.state.vector_index, app.state.db, top_k=settings.retrieval_top_k)
    app.state.knowledge = KnowledgeBase(app.state.db, app.state.vector_index)
    app.state.emitter = ProgressEmitter()
    app.state.turn_tasks = set()
    client = app.state.model_client
    app.state.orchestrator = SessionOrchestrator(
        settings=settings,
        db=app.state.db,
        sessions=app.state.sessions,
        gate=ClarificationGate(client, settings.clarify_endpoint),
        retriever=app.state.retriever,
        planner=PlanSynthesizer(client, settings.planner_endpoint),
        dispatcher=CapabilityDispatcher(
            app.state.db,
            github=app.state.github,
            sandbox=app.state.sandbox,
            browser=app.state.browser,
            docs=app.state.docs,
            retriever=app.state.retriever,
        ),
        answerer=AnswerSynthesizer(client, settings.answer_endpoint),
        locks=KeyedLock(),
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os

    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("GROUNDWORK_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "groundwork.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        pass
