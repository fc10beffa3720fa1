"""Abstract base class for model providers.

The review engine talks to models only through this interface. Provider
identity comes from the model configuration, never from the client object.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from pydantic import BaseModel

from quorum.schemas.config import ModelConfig
from quorum.schemas.review import ModelReply

if TYPE_CHECKING:
    from quorum.providers.tools import RepositoryTools
    from quorum.review.cancellation import CancellationToken


class ModelProvider(ABC):
    """Abstract interface for any LLM used as a reviewer or validator."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    # ── Identity ──────────────────────────────────────────────

    @property
    def provider_id(self) -> str:
        """Provider identifier (e.g. 'anthropic', 'openai', 'gemini')."""
        return self._config.provider

    @property
    def model_id(self) -> str:
        """LiteLLM model identifier used for routing."""
        return self._config.model

    @property
    def display_name(self) -> str:
        return self._config.display_name

    @property
    def config(self) -> ModelConfig:
        return self._config

    # ── Core interface ────────────────────────────────────────

    @abstractmethod
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
        """Send a completion request and return the model's reply.

        Args:
            messages: Conversation messages in OpenAI format.
            system: System prompt for this call.
            output_schema: Optional Pydantic model; when given the provider
                requests JSON output. Parsing is left to the caller.
            tools: Optional read-only repository tools the model may call.
            timeout: Timeout in seconds for each underlying request.
            cancel: Run cancellation token; in-flight calls are interrupted
                when it fires.

        Returns:
            A ModelReply with content, token usage and a call trace.

        Raises:
            ModelInvocationError: If the call fails after all retries.
            RunCancelledError: If the cancellation token fires.
        """

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate the USD cost for a given token count."""
        input_cost = (prompt_tokens / 1_000_000) * self._config.cost_input
        output_cost = (completion_tokens / 1_000_000) * self._config.cost_output
        return input_cost + output_cost
