import asyncio

import pytest

from groundwork.llm import ModelCallError
from groundwork.orchestrator import GENERIC_ERROR_MESSAGE, PLANNING_FAILED_MESSAGE
from groundwork.retrieval import VectorMatch
from tests.fakes import EventRecorder, FakeDocsClient, FakeModelClient, FakeVectorIndex


def _prefix_statuses(types):
    idx = 0
    while idx < len(types) and types[idx] == "status":
        idx += 1
    return idx, types[idx:]


@pytest.mark.asyncio
async def test_scenario_a_plans_dispatches_and_answers(stack_factory):
    model = FakeModelClient(
        plan={
            "steps": ["Look up deployment docs", "Find an example repository"],
            "invocations": [
                {"capability": "docs_search", "arguments": {"query": "deploy to Workers"}},
                {"capability": "github_api", "arguments": {"operation": "search_repos", "query": "workers starter"}},
            ],
        }
    )
    docs = FakeDocsClient(results=[{"title": "Deploy with Wrangler", "url": "https://dev/wrangler"}])
    stack = await stack_factory(fake_model=model, docs=docs)
    recorder = EventRecorder()

    result = await stack.orchestrator.handle_turn("s1", "How do I deploy to Workers?", recorder)
    payload = result.to_payload()

    assert payload["clarification"] == {"needed": False}
    assert payload["plan"]["toolCalls"][0]["tool"] == "docs_search"
    assert [r["tool"] for r in payload["tool_results"]] == ["docs_search", "github_api"]
    assert "Deploy with Wrangler" in payload["response"]
    assert "acme/remix-workers" in payload["response"]
    assert "error" not in payload

    n_status, rest = _prefix_statuses(recorder.types)
    assert n_status >= 1
    assert rest == ["plan_created", "tool_start", "tool_end", "tool_start", "tool_end", "final_response"]
    assert [e["payload"]["tool"] for e in recorder.events if e["type"] == "tool_start"] == ["docs_search", "github_api"]

    state = await stack.sessions.load("s1")
    assert [m.role for m in state.transcript] == ["user", "assistant"]
    assert state.transcript[1].content == payload["response"]
    assert not state.awaiting_clarification and state.clarification_context is None

    kinds = [e["kind"] for e in await stack.db.list_audit_events("s1")]
    assert kinds == [
        "USER_QUERY",
        "VECTOR_SEARCH",
        "PLAN",
        "TOOL:docs_search",
        "TOOL:github_api",
        "FINAL_RESPONSE",
    ]


@pytest.mark.asyncio
async def test_scenario_b_clarification_round_trip(stack_factory):
    model = FakeModelClient(
        clarify=[
            {"needs_clarification": True, "clarifying_question": "What would you like help with?"},
            {"needs_clarification": False},
        ]
    )
    stack = await stack_factory(fake_model=model)
    first_events = EventRecorder()

    first = await stack.orchestrator.handle_turn("s1", "Help me", first_events)
    assert first.clarification.needed is True
    assert first.response == "What would you like help with?"
    assert first.plan is None and first.invocation_results is None
    assert model.calls_for("planner") == []
    n_status, rest = _prefix_statuses(first_events.types)
    assert rest == ["clarification_needed"]

    waiting = await stack.sessions.load("s1")
    assert waiting.awaiting_clarification
    assert waiting.clarification_context.original_query == "Help me"
    assert waiting.clarification_context.clarifications == []
    assert [m.content for m in waiting.transcript] == ["Help me", "What would you like help with?"]

    second = await stack.orchestrator.handle_turn("s1", "Workers with Remix")
    assert second.clarification.needed is False
    assert second.plan is not None

    effective = "The original question was: Help me. Clarifications provided: (1) Workers with Remix"
    assert model.calls_for("clarify")[1]["user"].endswith(effective)
    assert effective in model.calls_for("planner")[0]["user"]

    done = await stack.sessions.load("s1")
    assert not done.awaiting_clarification and done.clarification_context is None
    assert [m.role for m in done.transcript] == ["user", "assistant", "user", "assistant"]
    assert done.turn_count == 2


@pytest.mark.asyncio
async def test_scenario_c_planner_failure(stack_factory):
    model = FakeModelClient(plan=ModelCallError("planner endpoint unavailable"))
    stack = await stack_factory(fake_model=model)
    recorder = EventRecorder()

    result = await stack.orchestrator.handle_turn("s1", "How do I deploy to Workers?", recorder)
    payload = result.to_payload()

    assert "plan" not in payload and "tool_results" not in payload
    assert "planner endpoint unavailable" in payload["error"]
    assert payload["response"] == PLANNING_FAILED_MESSAGE
    assert "plan_created" not in recorder.types and "tool_start" not in recorder.types
    assert recorder.types[-1] == "error"

    state = await stack.sessions.load("s1")
    assert state.awaiting_clarification is False
    assert state.transcript[0].content == "How do I deploy to Workers?"

    plan_events = [e for e in await stack.db.list_audit_events("s1") if e["kind"] == "PLAN"]
    assert plan_events[0]["status"] == "ERROR"


@pytest.mark.asyncio
async def test_clarification_rounds_are_bounded(stack_factory):
    ask = {"needs_clarification": True, "clarifying_question": "More detail?"}
    model = FakeModelClient(clarify=[ask, ask, ask, ask])
    stack = await stack_factory(fake_model=model, max_clarification_rounds=2)

    assert (await stack.orchestrator.handle_turn("s1", "Help me")).clarification.needed
    assert (await stack.orchestrator.handle_turn("s1", "with Workers")).clarification.needed
    final = await stack.orchestrator.handle_turn("s1", "using Remix")

    assert final.clarification.needed is False
    assert final.plan is not None
    assert len(model.calls_for("clarify")) == 2
    planner_prompt = model.calls_for("planner")[0]["user"]
    assert "(1) with Workers (2) using Remix" in planner_prompt


@pytest.mark.asyncio
async def test_unexpected_error_keeps_user_message(stack_factory, monkeypatch):
    stack = await stack_factory()
    recorder = EventRecorder()

    async def explode(*args, **kwargs):
        raise RuntimeError("dispatcher crashed")

    monkeypatch.setattr(stack.dispatcher, "run", explode)
    result = await stack.orchestrator.handle_turn("s1", "How do I deploy to Workers?", recorder)

    assert result.response == GENERIC_ERROR_MESSAGE
    assert result.error == "dispatcher crashed"
    assert recorder.types[-1] == "error"

    state = await stack.sessions.load("s1")
    assert state.transcript[-1].content == "How do I deploy to Workers?"
    assert state.awaiting_clarification is False and state.clarification_context is None

    audit = await stack.db.list_audit_events("s1")
    assert audit[-1]["kind"] == "UNEXPECTED_ERROR"
    assert audit[-1]["status"] == "ERROR"


@pytest.mark.asyncio
async def test_retrieved_context_reaches_planner_and_rag_event_is_opt_in(stack_factory):
    index = FakeVectorIndex()
    stack = await stack_factory(vector_index=index, emit_rag_result=True)
    await stack.knowledge.add("Deploying Workers", "Run wrangler deploy.", tags="workers")
    recorder = EventRecorder()

    await stack.orchestrator.handle_turn("s1", "How do I deploy to Workers?", recorder)

    assert "(1) Deploying Workers" in stack.model.calls_for("planner")[0]["user"]
    rag = [e for e in recorder.events if e["type"] == "rag_result"]
    assert rag and rag[0]["payload"]["context"].startswith("(1) Deploying Workers")


@pytest.mark.asyncio
async def test_default_stream_has_no_rag_event(stack_factory):
    stack = await stack_factory(vector_index=FakeVectorIndex([VectorMatch(id=1, score=0.5)]))
    recorder = EventRecorder()
    await stack.orchestrator.handle_turn("s1", "How do I deploy to Workers?", recorder)
    assert "rag_result" not in recorder.types


@pytest.mark.asyncio
async def test_transcript_is_capped(stack_factory):
    stack = await stack_factory(transcript_max_messages=3)
    for idx in range(3):
        await stack.orchestrator.handle_turn("s1", f"question {idx}")
    state = await stack.sessions.load("s1")
    assert len(state.transcript) == 3
    assert state.transcript[0].content.startswith("Test answer.")
    assert state.transcript[1].content == "question 2"


@pytest.mark.asyncio
async def test_same_session_turns_are_serialised(stack_factory):
    stack = await stack_factory()
    results = await asyncio.gather(
        *(stack.orchestrator.handle_turn("s1", f"question {idx}") for idx in range(4)),
        stack.orchestrator.handle_turn("s2", "other session"),
    )
    assert all(r.error is None for r in results)
    state = await stack.sessions.load("s1")
    assert len(state.transcript) == 8
    assert state.turn_count == 4
    assert [m.role for m in state.transcript] == ["user", "assistant"] * 4


@pytest.mark.asyncio
async def test_empty_text_is_rejected(stack_factory):
    stack = await stack_factory()
    with pytest.raises(ValueError):
        await stack.orchestrator.handle_turn("s1", "   ")
