"""LLM client and message helpers for the agent loop.

This module provides:
- LLMClient: Wrapper around LiteLLM with rate-limit retries and metrics
- MockLLMClient: Scripted client for tests
- Message formatting helpers for the tool-calling conversation
- Structured-content extraction (fenced JSON / YAML blocks)
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog
from litellm import ModelResponse, acompletion

from intentgraph.config import settings
from intentgraph.events.bus import EventBus
from intentgraph.events.types import AgentEvent, EventType, LLMMetrics
from intentgraph.rate_limiter import (
    RateLimitExhaustedError,
    backoff_delay,
    is_rate_limit_error,
    retry_after_seconds,
)

if TYPE_CHECKING:
    from intentgraph.metrics import MetricsCollector

logger = structlog.get_logger(__name__)


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays,
    primitives, or partially valid strings); tool execution always receives
    a dict.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        if not raw_args.strip():
            return {}
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: Tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, ...)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with rate-limit retries and metrics.

    Only rate-limit conditions are retried. The wait comes from the
    backend's retry hint when it gives one, else exponential backoff from
    ``llm_backoff_base_seconds``; every wait is capped. Any other error
    propagates from the first attempt.

    Attributes:
        event_bus: Optional EventBus for LLM call and rate-limit events
        default_model: Model used when a call does not name one
        retry_attempts: Retries after a rate-limited attempt
        metrics_collector: Optional per-run token accounting
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        retry_attempts: int | None = None,
        backoff_base: float | None = None,
        max_retry_wait: float | None = None,
        metrics_collector: Optional["MetricsCollector"] = None,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.default_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.backoff_base = (
            backoff_base if backoff_base is not None
            else settings.llm_backoff_base_seconds
        )
        self.max_retry_wait = (
            max_retry_wait if max_retry_wait is not None
            else settings.llm_max_retry_wait_seconds
        )
        self.metrics_collector = metrics_collector

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        json_mode: bool = False,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call, retrying rate-limited attempts.

        Args:
            messages: Message dicts (system/user/assistant/tool roles)
            tools: Optional tool definitions in OpenAI function format
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (defaults to settings)
            json_mode: Request a JSON object response
            run_id: Optional run id for events and metrics
            agent_id: Optional agent id for events

        Returns:
            LLMResponse with content, tool calls, and metrics

        Raises:
            RateLimitExhaustedError: The backend kept rate limiting after
                every retry.
            Exception: Any non-rate-limit backend error, unchanged.
        """
        model = model or self.default_model
        temperature = settings.llm_temperature if temperature is None else temperature

        for attempt in range(self.retry_attempts + 1):
            start_time = time.time()
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=model,
                    temperature=temperature,
                    json_mode=json_mode,
                )
            except Exception as e:
                if not is_rate_limit_error(e):
                    logger.error(
                        "llm_call_failed_no_retry",
                        model=model,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise

                if attempt >= self.retry_attempts:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise RateLimitExhaustedError(attempt + 1, e) from e

                delay = backoff_delay(
                    attempt,
                    retry_after_seconds(e),
                    base=self.backoff_base,
                    max_wait=self.max_retry_wait,
                )
                logger.warning(
                    "llm_call_rate_limited",
                    model=model,
                    attempt=attempt + 1,
                    max_retries=self.retry_attempts,
                    retry_delay=delay,
                )
                if self.metrics_collector and run_id:
                    self.metrics_collector.record_rate_limit_retry(run_id)
                if self.event_bus and run_id:
                    await self.event_bus.publish(
                        AgentEvent(
                            type=EventType.LLM_RATE_LIMITED,
                            run_id=run_id,
                            agent_id=agent_id,
                            data={"attempt": attempt + 1, "wait_seconds": delay},
                        )
                    )
                await self._async_sleep(delay)
                continue

            latency_ms = int((time.time() - start_time) * 1000)
            llm_response = self._parse_response(response, model, latency_ms)

            if self.event_bus and run_id:
                await self._emit_metrics_event(llm_response.metrics, run_id, agent_id)
            if self.metrics_collector and run_id:
                self.metrics_collector.record_llm_call(
                    run_id,
                    prompt_tokens=llm_response.metrics.input_tokens,
                    completion_tokens=llm_response.metrics.output_tokens,
                )

            logger.info(
                "llm_call_complete",
                model=model,
                input_tokens=llm_response.metrics.input_tokens,
                output_tokens=llm_response.metrics.output_tokens,
                latency_ms=latency_ms,
                tool_calls=len(llm_response.tool_calls),
                attempt=attempt + 1,
            )
            return llm_response

        # Unreachable: the last attempt either returns or raises.
        raise RuntimeError("LLM call loop exited without a result")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        json_mode: bool,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        if settings.llm_api_base:
            kwargs["api_base"] = settings.llm_api_base
        if settings.llm_api_key:
            kwargs["api_key"] = settings.llm_api_key

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into an LLMResponse."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallData] = []
        if message.tool_calls:
            for tc in message.tool_calls:
                tool_calls.append(
                    ToolCallData(
                        id=tc.id,
                        name=tc.function.name,
                        args=normalize_tool_args(tc.function.arguments),
                    )
                )

        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _emit_metrics_event(
        self,
        metrics: LLMMetrics,
        run_id: str,
        agent_id: str | None,
    ) -> None:
        if self.event_bus:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    run_id=run_id,
                    agent_id=agent_id,
                    data={
                        "model": metrics.model,
                        "input_tokens": metrics.input_tokens,
                        "output_tokens": metrics.output_tokens,
                        "latency_ms": metrics.latency_ms,
                    },
                )
            )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay.

        Extracted to a method for easier testing/mocking.
        """
        await asyncio.sleep(seconds)


def format_tool_result_for_llm(tool_call_id: str, result: str) -> dict[str, Any]:
    """Format a tool result as a ``tool`` role message."""
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message, including its tool calls if any."""
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]

    return message


_FENCE_PATTERN = re.compile(r"```([A-Za-z]*)[ \t]*\n?([\s\S]*?)```")


def extract_fenced_block(content: str, languages: tuple[str, ...]) -> str | None:
    """Return the body of the first fenced block labelled with one of ``languages``.

    An empty string in ``languages`` matches unlabelled fences.
    """
    for match in _FENCE_PATTERN.finditer(content):
        if match.group(1).lower() in languages:
            return match.group(2).strip()
    return None


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Entries in ``responses`` are returned in order; an entry that is an
    exception instance is raised instead, which lets tests script failures.

    Usage:
        >>> client = MockLLMClient(responses=[make_llm_response(content="{}")])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | BaseException] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        json_mode: bool = False,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted response.

        Raises:
            IndexError: If no more responses are available
        """
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "json_mode": json_mode,
            "run_id": run_id,
            "agent_id": agent_id,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        if isinstance(response, BaseException):
            raise response

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )
        return response

    def reset(self) -> None:
        """Start returning responses from the beginning again."""
        self._response_index = 0
        self.call_history.clear()
