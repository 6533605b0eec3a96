import logging

from .agents import PLANNER_SYSTEM
from .config import EndpointConfig
from .llm import ModelCallError, ModelClient
from .schemas import Plan

logger = logging.getLogger("uvicorn.error")


class PlanningError(RuntimeError):
    """No usable plan could be produced for the turn."""


def build_planner_prompt(query: str, context: str) -> str:
    return (
        f"User request:\n{query}\n\n"
        f"Curated knowledge context (already known, do not re-fetch):\n{context or 'None.'}\n\n"
        "Produce the plan JSON now."
    )


class PlanSynthesizer:
    def __init__(self, client: ModelClient, endpoint: EndpointConfig, max_tokens: int = 1200):
        self.client = client
        self.endpoint = endpoint
        self.max_tokens = max_tokens

    async def plan(self, query: str, context: str) -> Plan:
        try:
            result = await self.client.infer_structured(
                model=self.endpoint.model_id,
                system=PLANNER_SYSTEM,
                prompt=build_planner_prompt(query, context),
                schema=Plan,
                max_tokens=self.max_tokens,
                base_url=self.endpoint.base_url or None,
            )
        except (ModelCallError, ValueError) as exc:
            logger.warning("Plan synthesis failed: %s", exc)
            raise PlanningError(f"Failed to generate a plan: {exc}") from exc
        logger.info("Plan ready: %d step(s), %d invocation(s)", len(result.steps), len(result.invocations))
        return result
