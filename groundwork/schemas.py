from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


Role = Literal["user", "assistant"]
AuditStatus = Literal["SUCCESS", "ERROR", "PENDING"]
ProgressEventType = Literal[
    "status",
    "clarification_needed",
    "plan_created",
    "tool_start",
    "tool_end",
    "rag_result",
    "final_response",
    "error",
    "session_started",
]


class ChatMessage(BaseModel):
    role: Role
    content: str


class ClarificationContext(BaseModel):
    original_query: str
    clarifications: List[str] = Field(default_factory=list)

    def effective_query(self) -> str:
        if not self.clarifications:
            return self.original_query
        numbered = " ".join(f"({idx}) {text}" for idx, text in enumerate(self.clarifications, start=1))
        return f"The original question was: {self.original_query}. Clarifications provided: {numbered}"


class SessionState(BaseModel):
    session_key: str
    transcript: List[ChatMessage] = Field(default_factory=list)
    awaiting_clarification: bool = False
    clarification_context: Optional[ClarificationContext] = None
    turn_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @model_validator(mode="after")
    def _check_clarification_pair(self) -> "SessionState":
        if self.awaiting_clarification != (self.clarification_context is not None):
            raise ValueError("awaiting_clarification requires a clarification_context and vice versa")
        return self

    def append_message(self, role: Role, content: str, cap: int) -> None:
        self.transcript.append(ChatMessage(role=role, content=content))
        overflow = len(self.transcript) - max(cap, 1)
        if overflow > 0:
            del self.transcript[:overflow]

    def begin_clarification(self, context: ClarificationContext) -> None:
        self.clarification_context = context
        self.awaiting_clarification = True

    def clear_clarification(self) -> None:
        self.awaiting_clarification = False
        self.clarification_context = None


class ClarificationDecision(BaseModel):
    needs_clarification: bool = False
    clarifying_question: Optional[str] = None

    model_config = {"extra": "ignore"}


class CapabilityCall(BaseModel):
    capability: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


class Plan(BaseModel):
    steps: List[str] = Field(default_factory=list)
    invocations: List[CapabilityCall] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    def to_payload(self) -> Dict[str, Any]:
        return {
            "steps": list(self.steps),
            "toolCalls": [{"tool": call.capability, "args": call.arguments} for call in self.invocations],
        }


class InvocationResult(BaseModel):
    capability: str
    result: Any = None

    @property
    def failed(self) -> bool:
        return isinstance(self.result, dict) and "error" in self.result

    def to_payload(self) -> Dict[str, Any]:
        return {"tool": self.capability, "result": self.result}


class ClarificationStatus(BaseModel):
    needed: bool = False
    question: Optional[str] = None


class TurnResult(BaseModel):
    session_id: str
    response: str
    plan: Optional[Plan] = None
    invocation_results: Optional[List[InvocationResult]] = None
    clarification: ClarificationStatus = Field(default_factory=ClarificationStatus)
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sessionId": self.session_id,
            "response": self.response,
            "clarification": self.clarification.model_dump(exclude_none=True),
        }
        if self.plan is not None:
            payload["plan"] = self.plan.to_payload()
        if self.invocation_results is not None:
            payload["tool_results"] = [item.to_payload() for item in self.invocation_results]
        if self.error is not None:
            payload["error"] = self.error
        return payload


class ProgressEvent(BaseModel):
    type: ProgressEventType
    payload: Dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    query: str


class KnowledgeRequest(BaseModel):
    title: str
    content: str
    source_url: Optional[str] = None
    tags: Optional[str] = None
