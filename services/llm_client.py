# services/llm_client.py
from __future__ import annotations

import logging
import time
from typing import Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from config import settings
from errors import LLMError
from request_context import get_request_id

log = logging.getLogger("llm")

JSON_SYSTEM_PROMPT = """You are a travel activity expert with live web search.

Return strictly VALID JSON. No markdown, no prose, JSON only.
- Numbers are plain numbers: no currency symbols, no units, no ranges.
- When a price is a range, use its average (35-40 becomes 37.5).
- Use double quotes for every key and string; never use undefined or NaN.
- Only recommend activities that exist and can be booked today.
"""


class LLMClient(Protocol):
    async def complete(
        self,
        system: str,
        user: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str: ...


def _strip_code_fences(s: str | None) -> str:
    if not s:
        return ""
    t = s.strip()
    if t.startswith("```"):
        parts = t.split("```")
        if len(parts) >= 3:
            body = parts[1]
            # drop a language tag such as ```json
            if body[:4].lower() == "json":
                body = body[4:]
            return body.strip()
    return t


class PerplexityClient:
    """Chat completions against Perplexity's OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.perplexity.ai",
        model: str = "sonar-pro",
        timeout_s: float = 60.0,
        temperature: float = 0.1,
        max_tokens: int = 4000,
        client: Optional[AsyncOpenAI] = None,
    ):
        if not api_key and client is None:
            raise LLMError("Perplexity API key not configured.")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s)

    @classmethod
    def from_settings(cls) -> "PerplexityClient":
        return cls(
            api_key=settings.PERPLEXITY_API_KEY,
            base_url=settings.PERPLEXITY_BASE_URL,
            model=settings.PERPLEXITY_MODEL,
            timeout_s=settings.LLM_TIMEOUT_S,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
        )

    async def complete(
        self,
        system: str,
        user: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        rid = get_request_id()
        model = model or self.model
        started = time.perf_counter()
        try:
            chat = await self._client.chat.completions.create(
                model=model,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
        except OpenAIError as e:
            log.warning("LLM call failed", extra={"request_id": rid, "model": model, "error": e.__class__.__name__})
            raise LLMError(f"LLM request failed: {e.__class__.__name__}", model=model) from e

        content = chat.choices[0].message.content if chat.choices else None
        content = _strip_code_fences(content)
        if not content:
            raise LLMError("LLM returned an empty completion", model=model)

        log.info("LLM call ok", extra={
            "request_id": rid,
            "model": model,
            "chars": len(content),
            "duration_ms": int((time.perf_counter() - started) * 1000),
        })
        return content

    async def aclose(self) -> None:
        await self._client.close()
