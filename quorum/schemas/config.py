"""Configuration schemas for models, review setups and review settings.

Loaded from the packaged models.toml / defaults.toml and from an optional
project-level quorum.toml. Concurrency ceilings are kept as raw values here
and validated by the scheduler right before dispatch, so a single error can
report every malformed ceiling at once.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# Sentinel for "no concurrency ceiling" on a provider partition
UNBOUNDED = "unbounded"


class ModelConfig(BaseModel):
    """Configuration for a single LLM model in the registry.

    The provider field is the explicit provider identity used to group
    review tasks into concurrency partitions.
    """

    provider: str = Field(description="Provider identifier (e.g. 'anthropic', 'openai', 'gemini')")
    model: str = Field(description="LiteLLM model identifier (e.g. 'openai/gpt-5.2-codex')")
    display_name: str = Field(description="Human-friendly model name for CLI output")
    api_key_env: str = Field(description="Environment variable name holding the API key")
    api_base: str = Field(default="", description="Custom API base URL (empty = provider default)")
    label: str = Field(default="", description="Optional label shown in logs and usage tables")
    cost_input: float = Field(default=0.0, ge=0.0, description="Cost per 1M input tokens in USD")
    cost_output: float = Field(default=0.0, ge=0.0, description="Cost per 1M output tokens in USD")
    top_p: float | None = Field(
        default=None, gt=0.0, le=1.0, description="Nucleus sampling (None = provider default)"
    )
    temperature: float | None = Field(
        default=None, ge=0.0, le=2.0, description="Sampling temperature (None = provider default)"
    )
    max_output_tokens: int = Field(
        default=60_000, gt=0, description="Upper bound on generated tokens per call"
    )
    supports_tools: bool = Field(
        default=True, description="Whether the model may call the repository tools"
    )
    provider_options: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra provider kwargs forwarded to LiteLLM (e.g. reasoning_effort)",
    )

    @property
    def effort(self) -> str:
        """Reasoning effort configured for this model, for display."""
        effort = self.provider_options.get("reasoning_effort")
        if isinstance(effort, str | int):
            return str(effort)
        return "default effort"

    @property
    def name(self) -> str:
        return self.label or self.display_name


class SetupConfig(BaseModel):
    """A named set of reviewer models plus an optional validator model."""

    id: str = Field(description="Identifier used with --setup")
    label: str = Field(default="", description="Display label")
    reviewers: list[str] = Field(
        min_length=1, description="Model registry keys of the parallel reviewers"
    )
    validator: str | None = Field(
        default=None, description="Model registry key of the validator (None = fallback chain)"
    )


class CompactionStepConfig(BaseModel):
    """A configured file-set filter used to shrink an oversized diff.

    When include is non-empty only matching files are kept; exclude then
    removes matching files. Patterns are fnmatch globs.
    """

    name: str = Field(description="Step name shown in logs")
    include: list[str] = Field(default_factory=list, description="Globs of files to keep")
    exclude: list[str] = Field(default_factory=list, description="Globs of files to drop")
    exclude_supplementary_context: bool = Field(
        default=False,
        description="Drop AGENTS.md style supplementary context once this step applies",
    )


class ReviewSettings(BaseModel):
    """Top-level [review] settings."""

    max_diff_tokens: int = Field(
        default=60_000, gt=0, description="Maximum estimated diff tokens sent to reviewers"
    )
    previous_check: bool = Field(
        default=True, description="Run the previous-issue check when a prior review exists"
    )
    default_concurrency: Any = Field(
        default=UNBOUNDED,
        description="Ceiling for providers without an explicit entry",
    )
    concurrency_per_provider: dict[str, Any] = Field(
        default_factory=dict, description="Provider id → concurrency ceiling"
    )
    compaction: list[CompactionStepConfig] = Field(
        default_factory=list, description="Ordered compaction steps"
    )
    exclude_patterns: list[str] = Field(
        default_factory=list, description="Globs removed from the reviewed file list"
    )
    review_instructions_path: str = Field(
        default="", description="Markdown file with custom review instructions"
    )
    include_agents_file: bool = Field(
        default=True, description="Include AGENTS.md in reviewer prompts"
    )
    default_validator: str = Field(
        default="", description="Validator model key for setups that don't name one"
    )
    base_branch: str = Field(default="main", description="Base branch for branch diffs")
    output_path: str = Field(default="quorum-review.md", description="Review markdown output")
    logs_dir: str = Field(default="", description="Run-log directory (empty = disabled)")
    timeout: int = Field(default=600, gt=0, description="Timeout in seconds per model call")
    max_tool_steps: int = Field(
        default=40, ge=0, description="Maximum tool-call rounds per model call"
    )

    def ceiling_for(self, provider_id: str) -> Any:
        """Raw configured ceiling for a provider (validated later by the scheduler)."""
        return self.concurrency_per_provider.get(provider_id, self.default_concurrency)


class QuorumConfig(BaseModel):
    """Fully merged configuration: model registry, setups and review settings."""

    models: dict[str, ModelConfig] = Field(default_factory=dict)
    setups: dict[str, SetupConfig] = Field(default_factory=dict)
    review: ReviewSettings = Field(default_factory=ReviewSettings)


class ReviewSetup(BaseModel):
    """A setup resolved against the model registry.

    Reviewers may be empty here; the pipeline rejects that before dispatch.
    """

    id: str
    reviewers: list[ModelConfig] = Field(default_factory=list)
    validator: ModelConfig
