"""
Model client for the agent loop.

Talks to any OpenAI-compatible chat completions endpoint (vLLM, Ollama,
OpenAI). A request is an ordinary awaitable, so the agent loop can race it
against cancellation like any other suspension point.

Timeouts, network errors, 429 and 503 are retried; every other failure
surfaces as LLMError.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from forgebridge.config import LLMConfig
from forgebridge.errors import LLMError
from forgebridge.types import ToolCall

logger = logging.getLogger(__name__)

# Model responses can take minutes; everything else should be quick.
REQUEST_TIMEOUT = httpx.Timeout(connect=10.0, read=180.0, write=10.0, pool=10.0)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 10.0

RETRYABLE_STATUS = frozenset({429, 503})


@dataclass
class ChatResponse:
    """The assistant message of one completion."""
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    raw_response: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        choice = data["choices"][0]
        message = choice["message"]
        return cls(
            content=message.get("content") or "",
            tool_calls=[_parse_tool_call(raw) for raw in message.get("tool_calls") or []],
            finish_reason=choice.get("finish_reason") or "stop",
            raw_response=data,
        )

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def is_complete(self) -> bool:
        """True when the model answered in text and has nothing left to call."""
        return not self.tool_calls and self.finish_reason == "stop"


def _parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    function = raw["function"]
    encoded = function.get("arguments") or "{}"
    try:
        arguments = json.loads(encoded)
    except json.JSONDecodeError:
        # Schema validation rejects it with a message the model can act on
        arguments = {"raw": encoded}
    return ToolCall(id=raw["id"], name=function["name"], arguments=arguments)


class LLMClient:
    """Async chat completions client with bounded retries."""

    def __init__(
        self,
        config: LLMConfig | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or LLMConfig.from_env()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._http = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers={"Authorization": f"Bearer {self.config.api_key}"},
            timeout=REQUEST_TIMEOUT,
            transport=transport,
        )

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> ChatResponse:
        """
        Request one completion.

        Raises:
            LLMError: on a non-retryable HTTP status, a malformed body, or
                when every attempt failed.
        """
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice

        attempts = self.max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            logger.debug(f"Chat request: {len(messages)} messages, attempt {attempt}/{attempts}")
            try:
                data = await self._post(payload)
            except httpx.HTTPStatusError as e:
                if e.response.status_code not in RETRYABLE_STATUS:
                    raise LLMError(f"HTTP {e.response.status_code}: {e.response.text}") from e
                last_error = e
                delay = self._backoff(e.response)
                logger.warning(f"Model API returned {e.response.status_code}; retrying in {delay}s")
            except httpx.TransportError as e:
                last_error = e
                delay = self.retry_delay
                logger.warning(f"Model API request failed ({type(e).__name__}: {e}); retrying in {delay}s")
            else:
                try:
                    return ChatResponse.from_api_response(data)
                except (KeyError, IndexError, TypeError) as e:
                    raise LLMError(f"Malformed response from model API: {e!r}") from e

            if attempt < attempts:
                await asyncio.sleep(delay)

        logger.error(f"Model API unavailable after {attempts} attempts: {last_error}")
        raise LLMError(f"Request failed after {attempts} attempts: {last_error}") from last_error

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._http.post("/chat/completions", json=payload)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise LLMError(f"Malformed response from model API: {e}") from e

    def _backoff(self, response: httpx.Response) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        return self.retry_delay

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
