import json
import logging
from typing import Sequence

from .agents import ANSWER_SYSTEM
from .config import EndpointConfig
from .llm import ModelCallError, ModelClient
from .schemas import InvocationResult

logger = logging.getLogger("uvicorn.error")

FALLBACK_ANSWER = (
    "I gathered some information but could not put together a final answer right now. "
    "Please try again in a moment."
)
MAX_RESULT_CHARS = 6000


def format_results(results: Sequence[InvocationResult]) -> str:
    if not results:
        return "No capabilities were invoked."
    blocks = []
    for idx, item in enumerate(results, start=1):
        body = item.result if isinstance(item.result, str) else json.dumps(item.result, ensure_ascii=True, default=str)
        if len(body) > MAX_RESULT_CHARS:
            body = body[:MAX_RESULT_CHARS] + " ...[truncated]"
        status = "ERROR" if item.failed else "OK"
        blocks.append(f"[{idx}] {item.capability} ({status})\n{body}")
    return "\n\n".join(blocks)


class AnswerSynthesizer:
    def __init__(self, client: ModelClient, endpoint: EndpointConfig, max_tokens: int = 1500):
        self.client = client
        self.endpoint = endpoint
        self.max_tokens = max_tokens

    async def synthesize(self, query: str, results: Sequence[InvocationResult]) -> str:
        prompt = f"Question:\n{query}\n\nCapability results:\n{format_results(results)}"
        try:
            return await self.client.infer_text(
                model=self.endpoint.model_id,
                system=ANSWER_SYSTEM,
                prompt=prompt,
                temperature=0.3,
                max_tokens=self.max_tokens,
                base_url=self.endpoint.base_url or None,
            )
        except (ModelCallError, ValueError) as exc:
            logger.warning("Answer synthesis failed, using fallback: %s", exc)
            return FALLBACK_ANSWER
