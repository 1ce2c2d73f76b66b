"""
Language model client.

Each attempt races the provider call against a hard timeout; retryable
failures back off exponentially (capped) up to a fixed attempt ceiling,
after which ExhaustedRetriesError is raised to the caller.
"""
import asyncio
import json
import openai
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from tenacity import (
    AsyncRetrying,
    RetryError,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from bi_assistant.errors import AssistantError, ExhaustedRetriesError, TransportError, ValidationError
from bi_assistant.metrics import MODEL_CALLS_TOTAL, timer
from bi_assistant.utils import logger, race_with_timeout

ASSISTANT_MODEL = os.getenv("ASSISTANT_MODEL", "gpt-4o")
MODEL_TIMEOUT_SECONDS = float(os.getenv("MODEL_TIMEOUT_SECONDS", "45"))
MODEL_MAX_ATTEMPTS = int(os.getenv("MODEL_MAX_ATTEMPTS", "4"))
MODEL_BACKOFF_BASE_SECONDS = float(os.getenv("MODEL_BACKOFF_BASE_SECONDS", "2"))
MODEL_BACKOFF_CAP_SECONDS = float(os.getenv("MODEL_BACKOFF_CAP_SECONDS", "20"))
MODEL_MAX_TOKENS = int(os.getenv("MODEL_MAX_TOKENS", "1000"))

# Provider status codes that will not get better on retry
NON_RETRYABLE_STATUS = {400, 401, 403, 404, 422}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = "{}"


@dataclass
class ModelReply:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None

    @property
    def wants_tools(self) -> bool:
        return self.finish_reason == "tool_calls" or bool(self.tool_calls)

    def as_assistant_turn(self) -> Dict[str, Any]:
        """Conversation turn recording this reply, tool requests included"""
        turn: Dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            turn["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.raw_arguments},
                }
                for call in self.tool_calls
            ]
        return turn


def parse_reply(response: Any) -> ModelReply:
    """Normalize an OpenAI chat completion"""
    choice = response.choices[0]
    message = choice.message
    calls = []
    for call in getattr(message, "tool_calls", None) or []:
        raw = call.function.arguments or "{}"
        try:
            arguments = json.loads(raw)
        except ValueError:
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        calls.append(ToolCall(id=call.id, name=call.function.name, arguments=arguments, raw_arguments=raw))
    return ModelReply(text=message.content or "", tool_calls=calls, finish_reason=choice.finish_reason)


def classify_provider_error(exc: BaseException) -> AssistantError:
    if isinstance(exc, AssistantError):
        return exc
    status = getattr(exc, "status_code", None)
    if status in NON_RETRYABLE_STATUS:
        return ValidationError(f"Model request rejected ({status})", status_code=status)
    if isinstance(exc, asyncio.TimeoutError):
        return TransportError("Model call timed out")
    # Missing credentials and other client-side SDK errors carry no status
    if isinstance(exc, openai.OpenAIError) and status is None and not isinstance(exc, openai.APIConnectionError):
        return ValidationError(f"Model client error: {type(exc).__name__}")
    return TransportError(f"Model call failed: {type(exc).__name__}", status_code=status)


class ModelClient:
    def __init__(
        self,
        client: Any = None,
        model: str = ASSISTANT_MODEL,
        timeout: float = MODEL_TIMEOUT_SECONDS,
        max_attempts: int = MODEL_MAX_ATTEMPTS,
        backoff_base: float = MODEL_BACKOFF_BASE_SECONDS,
        backoff_cap: float = MODEL_BACKOFF_CAP_SECONDS,
    ):
        self._client = client
        self.model = model
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            # Retries are driven here, not by the SDK
            self._client = AsyncOpenAI(max_retries=0)
        return self._client

    async def _attempt(self, request: Dict[str, Any]) -> ModelReply:
        try:
            response = await race_with_timeout(
                self.client.chat.completions.create(**request),
                self.timeout,
                label="model call",
            )
        except Exception as e:
            error = classify_provider_error(e)
            MODEL_CALLS_TOTAL.labels(outcome=error.kind).inc()
            logger.warning("Model attempt failed", error=str(error), retryable=error.retryable)
            raise error from e
        MODEL_CALLS_TOTAL.labels(outcome="success").inc()
        return parse_reply(response)

    async def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = MODEL_MAX_TOKENS,
    ) -> ModelReply:
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "system", "content": system}, *messages],
            "temperature": 0 if tools else 0.3,
        }
        if tools:
            request["tools"] = tools

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_cap),
            retry=retry_if_exception(lambda e: isinstance(e, AssistantError) and e.retryable),
        )
        try:
            with timer("model_call"):
                async for attempt in retrying:
                    with attempt:
                        return await self._attempt(request)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise ExhaustedRetriesError(
                f"Model unavailable after {self.max_attempts} attempts: {last}",
                attempts=self.max_attempts,
                last_error=last,
            ) from last
        except ValidationError as e:
            raise ExhaustedRetriesError(f"Model request rejected: {e}", attempts=1, last_error=e) from e
