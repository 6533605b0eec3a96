import logging
import time
from typing import Optional

from .answer import AnswerSynthesizer
from .capabilities import CapabilityDispatcher
from .clarify import DEFAULT_CLARIFYING_QUESTION, ClarificationGate
from .config import AppSettings
from .db import Database, record_audit
from .events import EventSink, emit_to
from .planner import PlanningError, PlanSynthesizer
from .retrieval import KnowledgeRetriever
from .schemas import (
    ClarificationContext,
    ClarificationDecision,
    ClarificationStatus,
    SessionState,
    TurnResult,
)
from .session_store import KeyedLock, SessionStore

logger = logging.getLogger("uvicorn.error")

GENERIC_ERROR_MESSAGE = "Sorry, something went wrong while processing your request. Please try again."
PLANNING_FAILED_MESSAGE = "I could not put together a research plan for this request. Please try rephrasing it."


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class SessionOrchestrator:
    """Runs one turn per call: clarify, retrieve, plan, dispatch, answer.

    Turns for the same session key are serialised by a keyed lock; the session
    row is read once at the start of a turn and written back at its end.
    """

    def __init__(
        self,
        settings: AppSettings,
        db: Database,
        sessions: SessionStore,
        gate: ClarificationGate,
        retriever: KnowledgeRetriever,
        planner: PlanSynthesizer,
        dispatcher: CapabilityDispatcher,
        answerer: AnswerSynthesizer,
        locks: Optional[KeyedLock] = None,
    ):
        self.settings = settings
        self.db = db
        self.sessions = sessions
        self.gate = gate
        self.retriever = retriever
        self.planner = planner
        self.dispatcher = dispatcher
        self.answerer = answerer
        self.locks = locks or KeyedLock()

    async def handle_turn(self, session_key: str, text: str, sink: Optional[EventSink] = None) -> TurnResult:
        text = (text or "").strip()
        if not session_key or not text:
            raise ValueError("session_key and text are required")
        async with self.locks.hold(session_key):
            return await self._run_turn(session_key, text, sink)

    async def _run_turn(self, session_key: str, text: str, sink: Optional[EventSink]) -> TurnResult:
        await record_audit(self.db, session_key, "USER_QUERY", {"query": text})
        cap = self.settings.transcript_max_messages
        state: Optional[SessionState] = None
        try:
            state = await self.sessions.load(session_key)
            state.turn_count += 1
            if state.awaiting_clarification and state.clarification_context is not None:
                context = state.clarification_context.model_copy(deep=True)
                context.clarifications.append(text)
            else:
                context = ClarificationContext(original_query=text)
            effective_query = context.effective_query()
            state.append_message("user", text, cap)

            await emit_to(sink, "status", {"stage": "clarifying"})
            decision = await self._assess(context, effective_query)
            if decision.needs_clarification:
                question = decision.clarifying_question or DEFAULT_CLARIFYING_QUESTION
                state.begin_clarification(context)
                state.append_message("assistant", question, cap)
                await self.sessions.save(state)
                await record_audit(
                    self.db,
                    session_key,
                    "CLARIFICATION",
                    {"question": question, "effective_query": effective_query, "round": len(context.clarifications)},
                )
                await emit_to(sink, "clarification_needed", {"question": question})
                return TurnResult(
                    session_id=session_key,
                    response=question,
                    clarification=ClarificationStatus(needed=True, question=question),
                )
            state.clear_clarification()

            await emit_to(sink, "status", {"stage": "retrieving"})
            started = time.perf_counter()
            knowledge = await self.retriever.search(effective_query)
            await record_audit(
                self.db,
                session_key,
                "VECTOR_SEARCH",
                {"query": effective_query, "context": knowledge},
                duration_ms=_elapsed_ms(started),
            )
            if self.settings.emit_rag_result:
                await emit_to(sink, "rag_result", {"context": knowledge})

            await emit_to(sink, "status", {"stage": "planning"})
            started = time.perf_counter()
            try:
                plan = await self.planner.plan(effective_query, knowledge)
            except PlanningError as exc:
                return await self._planning_failed(state, exc, effective_query, started, sink)
            await record_audit(self.db, session_key, "PLAN", plan.to_payload(), duration_ms=_elapsed_ms(started))
            await emit_to(sink, "plan_created", plan.to_payload())

            results = await self.dispatcher.run(plan.invocations, session_key, sink)
            answer = await self.answerer.synthesize(effective_query, results)

            state.append_message("assistant", answer, cap)
            await self.sessions.save(state)
            await record_audit(
                self.db,
                session_key,
                "FINAL_RESPONSE",
                {"response": answer, "invocations": len(results)},
            )
            result = TurnResult(
                session_id=session_key,
                response=answer,
                plan=plan,
                invocation_results=results,
            )
            await emit_to(sink, "final_response", result.to_payload())
            return result
        except Exception as exc:
            detail = str(exc) or exc.__class__.__name__
            logger.exception("unexpected_error session=%s: %s", session_key, detail)
            await record_audit(
                self.db,
                session_key,
                "UNEXPECTED_ERROR",
                {"query": text},
                status="ERROR",
                error_message=detail,
            )
            if state is not None:
                await self._save_quietly(state)
            await emit_to(sink, "error", {"message": GENERIC_ERROR_MESSAGE, "detail": detail})
            return TurnResult(session_id=session_key, response=GENERIC_ERROR_MESSAGE, error=detail)

    async def _assess(self, context: ClarificationContext, effective_query: str) -> ClarificationDecision:
        limit = self.settings.max_clarification_rounds
        if len(context.clarifications) >= limit:
            logger.info("Clarification round limit (%d) reached; planning with accumulated query", limit)
            return ClarificationDecision(needs_clarification=False)
        return await self.gate.assess(effective_query)

    async def _planning_failed(
        self,
        state: SessionState,
        exc: PlanningError,
        effective_query: str,
        started: float,
        sink: Optional[EventSink],
    ) -> TurnResult:
        detail = str(exc)
        await record_audit(
            self.db,
            state.session_key,
            "PLAN",
            {"query": effective_query},
            status="ERROR",
            error_message=detail,
            duration_ms=_elapsed_ms(started),
        )
        state.append_message("assistant", PLANNING_FAILED_MESSAGE, self.settings.transcript_max_messages)
        await self.sessions.save(state)
        await emit_to(sink, "error", {"message": PLANNING_FAILED_MESSAGE, "detail": detail})
        return TurnResult(session_id=state.session_key, response=PLANNING_FAILED_MESSAGE, error=detail)

    async def _save_quietly(self, state: SessionState) -> None:
        try:
            await self.sessions.save(state)
        except Exception as exc:
            logger.warning("Could not persist session %s after failure: %s", state.session_key, exc)
