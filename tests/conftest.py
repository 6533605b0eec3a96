from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from groundwork.answer import AnswerSynthesizer
from groundwork.capabilities import CapabilityDispatcher
from groundwork.clarify import ClarificationGate
from groundwork.config import AppSettings, EndpointConfig
from groundwork.db import Database
from groundwork.main import create_app
from groundwork.orchestrator import SessionOrchestrator
from groundwork.planner import PlanSynthesizer
from groundwork.retrieval import KnowledgeBase, KnowledgeRetriever
from groundwork.session_store import KeyedLock, SessionStore
from tests.fakes import (
    FakeBrowserClient,
    FakeDocsClient,
    FakeGitHubClient,
    FakeModelClient,
    FakeSandboxClient,
    FakeVectorIndex,
)


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://lm.test/v1")
    endpoint = EndpointConfig(base_url=base_url, model_id="test-model")
    settings = AppSettings(
        model_base_url=base_url,
        clarify_endpoint=endpoint,
        planner_endpoint=endpoint,
        answer_endpoint=endpoint,
        embedding_model="test-embed",
        qdrant_url=None,
        embedding_dim=8,
        database_path=str(tmp_path / "test.db"),
        github_token=None,
        browser_account_id=None,
        docs_mcp_base_url=None,
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_model: FakeModelClient | None = None,
        vector_index: FakeVectorIndex | None = None,
        docs: FakeDocsClient | None = None,
        github: FakeGitHubClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model = fake_model or FakeModelClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            model_client=model,
            vector_index=vector_index or FakeVectorIndex(),
            github=github or FakeGitHubClient(),
            sandbox=FakeSandboxClient(),
            browser=FakeBrowserClient(),
            docs=docs or FakeDocsClient(),
            config_path=cfg_path,
        )
        return app, cfg_path, model

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, model = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_model = model  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "unit.db"))
    await database.init()
    return database


@pytest.fixture
async def stack_factory(tmp_path: Path):
    """Build an orchestrator over a real SQLite file with fake collaborators."""
    created = []

    async def _factory(
        *,
        fake_model: FakeModelClient | None = None,
        vector_index: FakeVectorIndex | None = None,
        docs: FakeDocsClient | None = None,
        github: FakeGitHubClient | None = None,
        **settings_overrides,
    ) -> SimpleNamespace:
        settings = make_settings(tmp_path, **settings_overrides)
        database = Database(settings.database_path)
        await database.init()
        model = fake_model or FakeModelClient()
        index = vector_index or FakeVectorIndex()
        retriever = KnowledgeRetriever(index, database, top_k=settings.retrieval_top_k)
        sessions = SessionStore(settings.database_path)
        dispatcher = CapabilityDispatcher(
            database,
            github=github or FakeGitHubClient(),
            sandbox=FakeSandboxClient(),
            browser=FakeBrowserClient(),
            docs=docs or FakeDocsClient(),
            retriever=retriever,
        )
        orchestrator = SessionOrchestrator(
            settings=settings,
            db=database,
            sessions=sessions,
            gate=ClarificationGate(model, settings.clarify_endpoint),
            retriever=retriever,
            planner=PlanSynthesizer(model, settings.planner_endpoint),
            dispatcher=dispatcher,
            answerer=AnswerSynthesizer(model, settings.answer_endpoint),
            locks=KeyedLock(),
        )
        stack = SimpleNamespace(
            settings=settings,
            db=database,
            model=model,
            index=index,
            retriever=retriever,
            knowledge=KnowledgeBase(database, index),
            sessions=sessions,
            dispatcher=dispatcher,
            orchestrator=orchestrator,
        )
        created.append(stack)
        return stack

    yield _factory
    for stack in created:
        await stack.model.close()
