"""Universal LiteLLM adapter implementing the ModelProvider interface.

Routes completion requests to any LLM provider via LiteLLM's unified API.
Handles JSON output requests, the read-only tool loop, token and
reasoning-token tracking, cost calculation, timeouts, cancellation and
retry with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import UTC, datetime
from typing import Any

import litellm
from pydantic import BaseModel

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from quorum.providers.base import ModelProvider
from quorum.providers.tools import RepositoryTools
from quorum.review.cancellation import CancellationToken
from quorum.review.errors import ModelInvocationError
from quorum.schemas.config import ModelConfig
from quorum.schemas.review import CallTrace, ModelReply, TokenUsage

logger = logging.getLogger(__name__)

# Max attempts for transient failures
_MAX_RETRIES = 3
_BASE_BACKOFF = 1.0  # seconds

_FINALIZE_MESSAGE = (
    "Tool budget exhausted. Do not call any more tools; "
    "write your final answer now using what you have gathered."
)


def _short_error_reason(error: Exception | None) -> str:
    """Extract a short, user-friendly reason from a LiteLLM error."""
    error_str = str(error).lower()
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "overloaded" in error_str or "529" in error_str:
        return "overloaded"
    if "timeout" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    return str(error)[:80]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class LiteLLMProvider(ModelProvider):
    """LLM adapter powered by LiteLLM.

    Routes calls to any provider (Anthropic, OpenAI, Google, xAI, ...)
    through ``litellm.acompletion()``. No provider SDK is imported anywhere
    else in Quorum.
    """

    def __init__(self, config: ModelConfig, max_tool_steps: int = 40) -> None:
        super().__init__(config)
        self._api_key = os.environ.get(config.api_key_env, "")
        self._max_tool_steps = max_tool_steps

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str,
        *,
        output_schema: type[BaseModel] | None = None,
        tools: RepositoryTools | None = None,
        timeout: int = 600,
        cancel: CancellationToken | None = None,
    ) -> ModelReply:
        """Send a completion request via LiteLLM.

        When tools are given and the model supports them, tool calls are
        executed and fed back until the model answers without tools or the
        tool budget runs out. Usage is summed over every round trip.

        Args:
            messages: Conversation messages in OpenAI format.
            system: System prompt for this call.
            output_schema: Optional Pydantic model; requests JSON output.
            tools: Optional repository tools.
            timeout: Timeout in seconds for each request.
            cancel: Run cancellation token.

        Returns:
            ModelReply with the final content, summed usage and a trace.

        Raises:
            ModelInvocationError: If a request fails after all retries.
            RunCancelledError: If the cancellation token fires.
        """
        cancel = cancel or CancellationToken()
        started_at = _now_iso()
        start = time.monotonic()

        conversation: list[dict[str, Any]] = [{"role": "system", "content": system}, *messages]
        use_tools = tools is not None and self._config.supports_tools and self._max_tool_steps > 0
        remaining_steps = self._max_tool_steps
        tool_log: list[dict[str, Any]] = []
        usage = TokenUsage.zero(self._usage_label)

        while True:
            kwargs = self._build_completion_kwargs(
                conversation,
                output_schema,
                timeout,
                tool_schemas=tools.schemas() if use_tools and tools is not None else None,
            )
            response = await self._call_with_retry(kwargs, cancel)
            usage = usage + self._build_token_usage(response)

            message = response.choices[0].message if response.choices else None
            tool_calls = list(getattr(message, "tool_calls", None) or [])
            finish_reason = str(getattr(response.choices[0], "finish_reason", "") or "") if response.choices else ""

            if not tool_calls or not use_tools or tools is None:
                content = self._extract_content(response)
                break

            if remaining_steps <= 0:
                logger.info("Tool budget exhausted for %s, forcing final answer", self.display_name)
                conversation.append({"role": "system", "content": _FINALIZE_MESSAGE})
                use_tools = False
                continue

            conversation.append(self._assistant_tool_message(message, tool_calls))
            for call in tool_calls:
                if remaining_steps <= 0:
                    break
                remaining_steps -= 1
                name = call.function.name or ""
                arguments = call.function.arguments or "{}"
                output = await cancel.guard(tools.call(name, arguments))
                tool_log.append({"name": name, "arguments": arguments, "result_chars": len(output)})
                conversation.append(
                    {"role": "tool", "tool_call_id": call.id, "name": name, "content": output}
                )

        trace = CallTrace(
            started_at=started_at,
            ended_at=_now_iso(),
            duration_ms=int((time.monotonic() - start) * 1000),
            model_id=self._config.model,
            provider=self._config.provider,
            finish_reason=finish_reason,
            tool_calls=tool_log,
            provider_options=dict(self._config.provider_options),
        )
        return ModelReply(content=content, usage=usage, trace=trace)

    @property
    def _usage_label(self) -> str:
        return self._config.label or self._config.model

    def _build_completion_kwargs(
        self,
        messages: list[dict[str, Any]],
        output_schema: type[BaseModel] | None,
        timeout: int,
        tool_schemas: list[dict[str, Any]] | None = None,
    ) -> dict:
        """Build the kwargs dict for litellm.acompletion."""
        kwargs: dict = {
            "model": self._config.model,
            "messages": messages,
            "timeout": float(timeout),
            "max_tokens": self._config.max_output_tokens,
        }

        if self._api_key:
            kwargs["api_key"] = self._api_key

        if self._config.api_base:
            kwargs["api_base"] = self._config.api_base

        if self._config.temperature is not None:
            kwargs["temperature"] = self._config.temperature

        if self._config.top_p is not None:
            kwargs["top_p"] = self._config.top_p

        if tool_schemas:
            kwargs["tools"] = tool_schemas
            kwargs["tool_choice"] = "auto"
        elif output_schema is not None:
            # JSON mode; tools and response_format don't mix on every provider
            kwargs["response_format"] = {"type": "json_object"}

        # Provider options (e.g. reasoning_effort) go through untouched
        for key, value in self._config.provider_options.items():
            kwargs.setdefault(key, value)

        return kwargs

    async def _call_with_retry(
        self, kwargs: dict, cancel: CancellationToken
    ) -> litellm.ModelResponse:
        """Call litellm.acompletion with exponential backoff retry.

        Retries on transient errors (rate limits, server errors, timeouts).
        Non-retryable errors (auth, invalid request) fail immediately.

        Raises:
            ModelInvocationError: If the call fails permanently or all
                attempts are exhausted.
            RunCancelledError: If the cancellation token fires, including
                during a backoff sleep.
        """
        last_error: Exception | None = None

        for attempt in range(_MAX_RETRIES):
            cancel.raise_if_cancelled()
            try:
                return await cancel.guard(litellm.acompletion(**kwargs))
            except TimeoutError:
                last_error = TimeoutError(
                    f"Model call timed out after {kwargs.get('timeout')}s "
                    f"(attempt {attempt + 1}/{_MAX_RETRIES})"
                )
            except litellm.AuthenticationError:
                raise ModelInvocationError(
                    f"Authentication failed for {self._config.model}. "
                    f"Check that {self._config.api_key_env} is set correctly.",
                    model=self._config.model,
                    attempts=attempt + 1,
                ) from None
            except litellm.BadRequestError as e:
                raise ModelInvocationError(
                    f"Bad request to {self._config.model}: {e}",
                    model=self._config.model,
                    attempts=attempt + 1,
                ) from e
            except (
                litellm.Timeout,
                litellm.RateLimitError,
                litellm.ServiceUnavailableError,
                litellm.InternalServerError,
                litellm.APIConnectionError,
            ) as e:
                last_error = e
            except (
                litellm.NotFoundError,
                litellm.PermissionDeniedError,
                litellm.UnprocessableEntityError,
                litellm.APIError,
            ) as e:
                raise ModelInvocationError(
                    f"Model call to {self._config.model} failed: {_short_error_reason(e)}",
                    model=self._config.model,
                    attempts=attempt + 1,
                ) from e

            if attempt < _MAX_RETRIES - 1:
                backoff = _BASE_BACKOFF * (2**attempt)
                logger.warning(
                    "Retry %d/%d for %s (%s, backoff: %.1fs)",
                    attempt + 1,
                    _MAX_RETRIES,
                    self._config.display_name,
                    _short_error_reason(last_error),
                    backoff,
                )
                await cancel.guard(asyncio.sleep(backoff))

        raise ModelInvocationError(
            f"Model call to {self._config.model} failed after {_MAX_RETRIES} "
            f"attempts: {_short_error_reason(last_error)}",
            model=self._config.model,
            attempts=_MAX_RETRIES,
        ) from last_error

    @staticmethod
    def _assistant_tool_message(message: Any, tool_calls: list[Any]) -> dict[str, Any]:
        return {
            "role": "assistant",
            "content": getattr(message, "content", None) or "",
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.function.name,
                        "arguments": call.function.arguments or "{}",
                    },
                }
                for call in tool_calls
            ],
        }

    def _extract_content(self, response: litellm.ModelResponse) -> str:
        """Extract text content from a LiteLLM response."""
        if not response.choices:
            return ""
        message = response.choices[0].message
        return message.content or "" if message else ""

    def _build_token_usage(self, response: litellm.ModelResponse) -> TokenUsage:
        """Build TokenUsage from the LiteLLM response usage data."""
        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        total_tokens = getattr(usage, "total_tokens", 0) or (prompt_tokens + completion_tokens)

        details = getattr(usage, "completion_tokens_details", None)
        reasoning = getattr(details, "reasoning_tokens", None)
        reasoning_tokens = reasoning if isinstance(reasoning, int) else None

        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            reasoning_tokens=reasoning_tokens,
            model=self._usage_label,
            cost=self.calculate_cost(prompt_tokens, completion_tokens),
        )
