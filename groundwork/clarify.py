import logging
from typing import Optional

from .agents import CLARIFY_SYSTEM
from .config import EndpointConfig
from .llm import ModelCallError, ModelClient
from .schemas import ClarificationDecision

logger = logging.getLogger("uvicorn.error")

DEFAULT_CLARIFYING_QUESTION = (
    "Could you share a bit more detail about what you are trying to do, "
    "such as the product, framework or error involved?"
)


class ClarificationGate:
    """Decide whether a query is answerable as written.

    Any failure of the model call degrades to "no clarification needed" so a
    flaky endpoint never blocks a turn.
    """

    def __init__(self, client: ModelClient, endpoint: EndpointConfig, max_tokens: int = 256):
        self.client = client
        self.endpoint = endpoint
        self.max_tokens = max_tokens

    async def assess(self, query: str) -> ClarificationDecision:
        try:
            decision = await self.client.infer_structured(
                model=self.endpoint.model_id,
                system=CLARIFY_SYSTEM,
                prompt=f"User request:\n{query}",
                schema=ClarificationDecision,
                max_tokens=self.max_tokens,
                base_url=self.endpoint.base_url or None,
            )
        except (ModelCallError, ValueError) as exc:
            logger.warning("Clarification check failed, continuing without it: %s", exc)
            return ClarificationDecision(needs_clarification=False)
        if not decision.needs_clarification:
            return ClarificationDecision(needs_clarification=False)
        question: Optional[str] = (decision.clarifying_question or "").strip() or None
        return ClarificationDecision(
            needs_clarification=True,
            clarifying_question=question or DEFAULT_CLARIFYING_QUESTION,
        )
