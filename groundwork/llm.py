import json
import re
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError


ALLOWED_ROLES = {"system", "user", "assistant"}
DISALLOWED_FIELDS = {
    "tools",
    "tool_choice",
    "response_format",
    "reasoning",
    "seed",
    "logprobs",
    "top_logprobs",
    "parallel_tool_calls",
    "json_schema",
}
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

T = TypeVar("T", bound=BaseModel)


class ModelCallError(RuntimeError):
    """The inference endpoint failed or returned nothing usable."""


class StructuredOutputError(ModelCallError):
    """The model answered, but not with an object matching the requested schema."""


def extract_json_text(raw: str) -> str:
    text = (raw or "").strip()
    match = _FENCED_JSON_RE.search(text)
    if match:
        return match.group(1).strip()
    if (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]")):
        return text
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text


def message_content(data: Any) -> str:
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if content is None or content == "":
        content = message.get("reasoning") or message.get("reasoning_content") or ""
    return str(content)


def schema_instructions(schema: Type[BaseModel]) -> str:
    return (
        "Respond with a single JSON object only, no prose and no code fences. "
        "It must validate against this JSON schema:\n"
        f"{json.dumps(schema.model_json_schema(), ensure_ascii=True)}"
    )


class ModelClient:
    def __init__(self, base_url: str, max_output_tokens: Optional[int] = None, timeout: float = 60):
        self.base_url = base_url.rstrip("/")
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout)

    def _normalize_error_text(self, detail: str) -> str:
        text = detail or ""
        for _ in range(2):
            try:
                parsed = json.loads(text)
            except ValueError:
                break
            if isinstance(parsed, dict):
                found = False
                for key in ("error", "detail", "message"):
                    val = parsed.get(key)
                    if isinstance(val, str) and val.strip():
                        text = val
                        found = True
                        break
                    if isinstance(val, dict) and isinstance(val.get("message"), str):
                        text = val["message"]
                        found = True
                        break
                if not found:
                    break
            elif isinstance(parsed, str):
                text = parsed
            else:
                break
        return text

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _sanitize_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in DISALLOWED_FIELDS}

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return self._normalize_error_text(json.dumps(data, ensure_ascii=True))
        except ValueError:
            pass
        return response.text

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not str(model or "").strip():
            raise ValueError("model is required")
        target_base = (base_url or self.base_url).rstrip("/")
        payload = self._sanitize_payload(
            {
                "model": model,
                "messages": cleaned,
                "temperature": temperature,
                "max_tokens": final_max_tokens,
                "stream": False,
            }
        )
        try:
            resp = await self.client.post(f"{target_base}/chat/completions", json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise ModelCallError(f"chat completion failed ({exc.response.status_code}): {detail}") from exc
        except httpx.RequestError as exc:
            raise ModelCallError(f"chat completion request failed: {exc}") from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise ModelCallError("chat completion returned a non-JSON body") from exc

    async def infer_text(
        self,
        model: str,
        system: str,
        prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        base_url: Optional[str] = None,
    ) -> str:
        data = await self.chat_completion(
            model=model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            base_url=base_url,
        )
        text = message_content(data).strip()
        if not text:
            raise ModelCallError("model returned an empty response")
        return text

    async def infer_structured(
        self,
        model: str,
        system: str,
        prompt: str,
        schema: Type[T],
        temperature: float = 0.0,
        max_tokens: int = 1024,
        base_url: Optional[str] = None,
    ) -> T:
        data = await self.chat_completion(
            model=model,
            messages=[
                {"role": "system", "content": f"{system}\n\n{schema_instructions(schema)}"},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            base_url=base_url,
        )
        raw = message_content(data)
        try:
            return schema.model_validate_json(extract_json_text(raw))
        except ValidationError as exc:
            raise StructuredOutputError(f"{schema.__name__} validation failed: {exc.error_count()} error(s)") from exc

    async def embed(self, model: str, texts: List[str], base_url: Optional[str] = None) -> List[List[float]]:
        target_base = (base_url or self.base_url).rstrip("/")
        try:
            resp = await self.client.post(f"{target_base}/embeddings", json={"model": model, "input": texts})
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise ModelCallError(f"embedding request failed ({exc.response.status_code}): {detail}") from exc
        except httpx.RequestError as exc:
            raise ModelCallError(f"embedding request failed: {exc}") from exc
        rows = resp.json().get("data") or []
        vectors = [row.get("embedding") for row in sorted(rows, key=lambda r: r.get("index", 0))]
        if len(vectors) != len(texts) or not all(isinstance(v, list) and v for v in vectors):
            raise ModelCallError("embedding response did not contain one vector per input")
        return vectors

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
