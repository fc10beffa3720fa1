"""Tests for quorum.review.pipeline: fan-out, collection, gate and validation."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import litellm
import pytest

from quorum.providers.base import ModelProvider
from quorum.providers.litellm_provider import LiteLLMProvider
from quorum.providers.tools import RepositoryTools
from quorum.review.cancellation import CancellationToken
from quorum.review.compactor import GlobCompactionStep
from quorum.review.errors import (
    ConfigurationError,
    DiffBudgetExceededError,
    ModelInvocationError,
    NoSuccessfulReviewsError,
    RunCancelledError,
    TotalPipelineFailure,
    ValidationFailedError,
)
from quorum.review.events import EventType, ReviewEventEmitter
from quorum.review.interfaces import DiffSnapshot
from quorum.review.pipeline import (
    ReviewPipeline,
    ReviewRequest,
    is_empty_previous_check,
    order_successes,
    partition_tasks,
    prepare_diff,
)
from quorum.schemas.config import ModelConfig, ReviewSettings, ReviewSetup
from quorum.schemas.review import (
    IssueCategory,
    ModelReply,
    TaskId,
    TaskSuccess,
    TokenUsage,
)

_ACOMP = "quorum.providers.litellm_provider.litellm.acompletion"

# ── Helpers ───────────────────────────────────────────────────


def _make_model(key: str, provider: str = "anthropic", **overrides) -> ModelConfig:
    defaults = {
        "provider": provider,
        "model": f"{provider}/{key}",
        "display_name": key,
        "api_key_env": "TEST_API_KEY",
    }
    defaults.update(overrides)
    return ModelConfig(**defaults)


_VALIDATOR = _make_model("validator", provider="openai")


def _validator_json(*issues: dict, summary: str = "Merged review") -> str:
    return json.dumps({"summary": summary, "issues": list(issues)})


def _issue(category: str, path: str = "src/app.py", description: str = "problem") -> dict:
    return {"category": category, "files": [{"path": path, "line": 3}], "description": description}


class _FakeProvider(ModelProvider):
    """Scripted provider; replies keyed by LiteLLM model string.

    A reply is a string, an exception to raise, or a (delay, string) pair.
    Calls with an output schema get ``validator_reply``.
    """

    def __init__(self, config: ModelConfig, script: _Script) -> None:
        super().__init__(config)
        self._script = script

    async def complete(
        self,
        messages,
        system,
        *,
        output_schema=None,
        tools=None,
        timeout=600,
        cancel=None,
    ) -> ModelReply:
        self._script.calls.append(
            {
                "model": self._config.model,
                "system": system,
                "user": messages[-1]["content"],
                "validator": output_schema is not None,
                "tools": tools,
            }
        )
        if output_schema is not None:
            reply = self._script.validator_reply
        else:
            reply = self._script.replies[self._config.model]
        if isinstance(reply, tuple):
            delay, reply = reply
            await cancel.guard(asyncio.sleep(delay))
        if isinstance(reply, Exception):
            raise reply
        if reply == _HANG:
            await cancel.guard(asyncio.sleep(30))
        usage_tokens = self._script.tokens.get(self._config.model, 100)
        return ModelReply(
            content=reply,
            usage=TokenUsage(
                prompt_tokens=usage_tokens // 2,
                completion_tokens=usage_tokens - usage_tokens // 2,
                total_tokens=usage_tokens,
                model=self._config.display_name,
            ),
        )


_HANG = "__hang__"


class _Script:
    def __init__(self, replies=None, validator_reply=None, tokens=None) -> None:
        self.replies = replies or {}
        self.validator_reply = validator_reply if validator_reply is not None else _validator_json()
        self.tokens = tokens or {}
        self.calls: list[dict] = []

    def factory(self, model: ModelConfig) -> ModelProvider:
        return _FakeProvider(model, self)

    @property
    def validator_calls(self) -> list[dict]:
        return [c for c in self.calls if c["validator"]]


class _StaticLookup:
    def __init__(self, issues: str | None) -> None:
        self.issues = issues
        self.markers: list[str] = []

    def find_previous_issues(self, marker: str) -> str | None:
        self.markers.append(marker)
        return self.issues


def _make_request(**overrides) -> ReviewRequest:
    defaults = {
        "context_label": "feature/login",
        "files": ["src/app.py"],
        "diff": "+ def login(): pass",
        "review_instructions": "Look for bugs.",
        "review_marker": "QUORUM_REVIEW",
    }
    defaults.update(overrides)
    return ReviewRequest(**defaults)


def _make_setup(*reviewers: ModelConfig, validator: ModelConfig = _VALIDATOR) -> ReviewSetup:
    return ReviewSetup(id="test", reviewers=list(reviewers), validator=validator)


def _settings(**overrides) -> ReviewSettings:
    return ReviewSettings(**overrides)


async def _run(script: _Script, setup: ReviewSetup, *, settings=None, lookup=None, **kwargs):
    pipeline = ReviewPipeline(script.factory, prior_lookup=lookup, **kwargs)
    return await pipeline.run(
        _make_request(),
        setup,
        settings or _settings(),
        CancellationToken(),
    )


# ── Pure helpers ──────────────────────────────────────────────


class TestHelpers:
    def test_order_previous_check_first_then_numeric(self):
        results = [
            TaskSuccess(TaskId.reviewer(3), "c", TokenUsage()),
            TaskSuccess(TaskId.reviewer(1), "a", TokenUsage()),
            TaskSuccess(TaskId.previous_check(), "pc", TokenUsage()),
            TaskSuccess(TaskId.reviewer(2), "b", TokenUsage()),
        ]
        ordered = order_successes(results)
        assert [str(r.task_id) for r in ordered] == ["previous-check", "1", "2", "3"]

    def test_order_is_numeric_not_lexical(self):
        results = [
            TaskSuccess(TaskId.reviewer(10), "", TokenUsage()),
            TaskSuccess(TaskId.reviewer(2), "", TokenUsage()),
        ]
        assert [r.task_id.number for r in order_successes(results)] == [2, 10]

    @pytest.mark.parametrize(
        "content",
        ["No issues found.", "## Issues\nno issues found", "No issues identified in this review."],
    )
    def test_empty_previous_check_sentinels(self, content):
        result = TaskSuccess(TaskId.previous_check(), content, TokenUsage(total_tokens=50))
        assert is_empty_previous_check(result) is True

    def test_previous_check_with_zero_usage_is_empty(self):
        result = TaskSuccess(TaskId.previous_check(), "Still broken", TokenUsage(total_tokens=0))
        assert is_empty_previous_check(result) is True

    def test_previous_check_with_findings_is_kept(self):
        result = TaskSuccess(TaskId.previous_check(), "C1 still present", TokenUsage(total_tokens=5))
        assert is_empty_previous_check(result) is False

    def test_reviewer_never_counts_as_empty_previous_check(self):
        result = TaskSuccess(TaskId.reviewer(1), "No issues found.", TokenUsage(total_tokens=0))
        assert is_empty_previous_check(result) is False

    def test_partition_by_explicit_provider(self):
        pipeline = ReviewPipeline(_Script().factory)
        setup = _make_setup(
            _make_model("a1", "anthropic"),
            _make_model("o1", "openai"),
            _make_model("a2", "anthropic"),
        )
        settings = _settings(concurrency_per_provider={"anthropic": 1}, default_concurrency=3)
        tasks = pipeline.build_tasks(_make_request(), setup, settings)

        partitions = partition_tasks(tasks, settings)

        assert list(partitions) == ["anthropic", "openai"]
        assert [t.task_id.number for t in partitions["anthropic"].tasks] == [1, 3]
        assert partitions["anthropic"].ceiling == 1
        assert partitions["openai"].ceiling == 3


# ── Fan-out ───────────────────────────────────────────────────


class TestBuildTasks:
    def test_one_task_per_reviewer_with_identical_inputs(self):
        pipeline = ReviewPipeline(_Script().factory)
        setup = _make_setup(_make_model("r1"), _make_model("r2", "gemini"))

        tasks = pipeline.build_tasks(_make_request(), setup, _settings())

        assert [t.task_id for t in tasks] == [TaskId.reviewer(1), TaskId.reviewer(2)]
        assert tasks[0].inputs == tasks[1].inputs
        assert [t.provider_id for t in tasks] == ["anthropic", "gemini"]

    def test_previous_check_added_with_prior_issues(self):
        lookup = _StaticLookup("### C1\nSQL injection")
        pipeline = ReviewPipeline(_Script().factory, prior_lookup=lookup)
        setup = _make_setup(_make_model("r1"))

        tasks = pipeline.build_tasks(_make_request(), setup, _settings())

        assert tasks[-1].task_id.is_previous_check
        assert tasks[-1].model == _VALIDATOR
        assert tasks[-1].provider_id == "openai"
        assert "SQL injection" in tasks[-1].inputs.previous_issues
        assert lookup.markers == ["QUORUM_REVIEW"]

    def test_previous_check_disabled(self):
        lookup = _StaticLookup("### C1\nSQL injection")
        pipeline = ReviewPipeline(_Script().factory, prior_lookup=lookup)

        tasks = pipeline.build_tasks(
            _make_request(), _make_setup(_make_model("r1")), _settings(previous_check=False)
        )

        assert [t.task_id for t in tasks] == [TaskId.reviewer(1)]
        assert lookup.markers == []

    def test_no_prior_review_means_no_previous_check(self):
        pipeline = ReviewPipeline(_Script().factory, prior_lookup=_StaticLookup(None))
        tasks = pipeline.build_tasks(_make_request(), _make_setup(_make_model("r1")), _settings())
        assert len(tasks) == 1

    def test_supplementary_context_dropped_when_excluded(self):
        pipeline = ReviewPipeline(_Script().factory)
        request = _make_request(
            supplementary_context="Use tabs.",
            supplementary_source="AGENTS.md",
            exclude_supplementary_context=True,
        )
        tasks = pipeline.build_tasks(request, _make_setup(_make_model("r1")), _settings())
        assert tasks[0].inputs.supplementary_context == ""
        assert tasks[0].inputs.supplementary_source == ""


# ── Full run ──────────────────────────────────────────────────


class TestPipelineRun:
    @pytest.mark.asyncio()
    async def test_two_reviewers_one_provider_merge(self):
        r1 = _make_model("r1")
        r2 = _make_model("r2")
        script = _Script(
            replies={r1.model: "Found bug A", r2.model: "Found bug B"},
            validator_reply=_validator_json(
                _issue("critical", description="bug A"),
                _issue("possible", description="bug B"),
            ),
        )

        run = await _run(script, _make_setup(r1, r2), settings=_settings(default_concurrency=1))

        assert len(run.successes) == 2
        assert [i.description for i in run.validated_review.issues] == ["bug A", "bug B"]
        assert len(script.calls) == 3
        assert len(script.validator_calls) == 1
        user = script.validator_calls[0]["user"]
        assert "Found bug A" in user
        assert "Found bug B" in user

    @pytest.mark.asyncio()
    async def test_failed_reviewer_is_excluded_not_raised(self):
        r1 = _make_model("r1")
        r2 = _make_model("r2", "openai")
        script = _Script(
            replies={
                r1.model: ModelInvocationError("network unreachable", model=r1.model),
                r2.model: "Only reviewer two",
            },
        )

        run = await _run(script, _make_setup(r1, r2))

        assert [s.task_id for s in run.successes] == [TaskId.reviewer(2)]
        assert [f.task_id for f in run.failures] == [TaskId.reviewer(1)]
        user = script.validator_calls[0]["user"]
        assert "Only reviewer two" in user
        assert "Reviewer 1" not in user

    @pytest.mark.asyncio()
    async def test_all_reviewers_fail_skips_validator(self):
        r1, r2 = _make_model("r1"), _make_model("r2")
        script = _Script(
            replies={r1.model: RuntimeError("down"), r2.model: TimeoutError("slow")},
        )

        with pytest.raises(NoSuccessfulReviewsError) as exc_info:
            await _run(script, _make_setup(r1, r2))

        assert exc_info.value.failed == 2
        assert script.validator_calls == []

    @pytest.mark.asyncio()
    async def test_no_reviewers_is_configuration_error(self):
        script = _Script()
        with pytest.raises(ConfigurationError):
            await _run(script, _make_setup())
        assert script.calls == []

    @pytest.mark.asyncio()
    async def test_malformed_ceiling_fails_before_dispatch(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: "ok"})
        with pytest.raises(ConfigurationError):
            await _run(
                script,
                _make_setup(r1),
                settings=_settings(concurrency_per_provider={"anthropic": 0}),
            )
        assert script.calls == []

    @pytest.mark.asyncio()
    async def test_discarded_issues_removed(self):
        r1 = _make_model("r1")
        script = _Script(
            replies={r1.model: "stuff"},
            validator_reply=_validator_json(
                _issue("critical", description="real"),
                _issue("not-applicable-or-false-positive", description="bogus"),
                _issue("suggestion", description="nit"),
            ),
        )

        run = await _run(script, _make_setup(r1))

        categories = [i.category for i in run.validated_review.issues]
        assert IssueCategory.DISCARD not in categories
        assert [i.description for i in run.validated_review.issues] == ["real", "nit"]
        assert run.validated_review.summary == "Merged review"

    @pytest.mark.asyncio()
    async def test_validator_sees_reviews_in_stable_order(self):
        r1, r2, r3 = _make_model("r1"), _make_model("r2"), _make_model("r3")
        script = _Script(
            replies={
                r1.model: (0.03, "REVIEW-ONE"),
                r2.model: (0.02, "REVIEW-TWO"),
                r3.model: "REVIEW-THREE",
                _VALIDATOR.model: (0.01, "C1 is still present"),
            },
        )

        run = await _run(script, _make_setup(r1, r2, r3), lookup=_StaticLookup("### C1\nold bug"))

        assert [str(s.task_id) for s in run.successes] == ["previous-check", "1", "2", "3"]
        user = script.validator_calls[0]["user"]
        positions = [
            user.index("C1 is still present"),
            user.index("REVIEW-ONE"),
            user.index("REVIEW-TWO"),
            user.index("REVIEW-THREE"),
        ]
        assert positions == sorted(positions)

    @pytest.mark.asyncio()
    async def test_empty_previous_check_is_excluded(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: "real review", _VALIDATOR.model: "No issues found."})
        emitter = ReviewEventEmitter()

        run = await _run(
            script, _make_setup(r1), lookup=_StaticLookup("### C1\nold"), emitter=emitter
        )

        assert [s.task_id for s in run.successes] == [TaskId.reviewer(1)]
        assert [s.task_id for s in run.excluded] == [TaskId.previous_check()]
        assert "No issues found." not in script.validator_calls[0]["user"]
        assert EventType.TASK_EXCLUDED in [e.type for e in emitter.history]

    @pytest.mark.asyncio()
    async def test_only_empty_previous_check_left_fails_gate(self):
        r1 = _make_model("r1")
        script = _Script(
            replies={r1.model: RuntimeError("down"), _VALIDATOR.model: "No issues found."}
        )

        with pytest.raises(NoSuccessfulReviewsError):
            await _run(script, _make_setup(r1), lookup=_StaticLookup("### C1\nold"))
        assert script.validator_calls == []

    @pytest.mark.asyncio()
    async def test_validator_call_failure(self):
        r1 = _make_model("r1")
        script = _Script(
            replies={r1.model: "review"},
            validator_reply=ModelInvocationError("rate limit", model=_VALIDATOR.model),
        )

        with pytest.raises(ValidationFailedError, match="Validator call failed"):
            await _run(script, _make_setup(r1))

    @pytest.mark.asyncio()
    async def test_unexpected_validator_error_is_total_failure(self):
        r1 = _make_model("r1")
        script = _Script(
            replies={r1.model: "review"},
            validator_reply=RuntimeError("model not found"),
        )

        with pytest.raises(ValidationFailedError, match="RuntimeError: model not found") as exc_info:
            await _run(script, _make_setup(r1))
        assert isinstance(exc_info.value, TotalPipelineFailure)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio()
    async def test_litellm_not_found_on_validator(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: "review"})

        def factory(model: ModelConfig) -> ModelProvider:
            if model == _VALIDATOR:
                return LiteLLMProvider(model)
            return script.factory(model)

        not_found = litellm.NotFoundError(
            message="model not found", model=_VALIDATOR.model, llm_provider="openai"
        )
        pipeline = ReviewPipeline(factory)
        with (
            patch(_ACOMP, new_callable=AsyncMock, side_effect=not_found) as mock,
            pytest.raises(ValidationFailedError, match="Validator call failed"),
        ):
            await pipeline.run(_make_request(), _make_setup(r1), _settings(), CancellationToken())

        assert mock.call_count == 1

    @pytest.mark.asyncio()
    async def test_cancellation_during_validation_is_not_wrapped(self):
        r1 = _make_model("r1")
        script = _Script(
            replies={r1.model: "review"},
            validator_reply=RunCancelledError("interrupted"),
        )

        with pytest.raises(RunCancelledError):
            await _run(script, _make_setup(r1))

    @pytest.mark.asyncio()
    async def test_unparseable_validator_output(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: "review"}, validator_reply="I think it's fine!")

        with pytest.raises(ValidationFailedError, match="could not be parsed"):
            await _run(script, _make_setup(r1))

    @pytest.mark.asyncio()
    async def test_validator_usage_and_model_recorded(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: "review"}, tokens={_VALIDATOR.model: 40})

        run = await _run(script, _make_setup(r1))

        assert run.validated_review.usage.total_tokens == 40
        assert run.validator_model == _VALIDATOR
        assert run.model_for(TaskId.reviewer(1)) == r1
        assert run.model_for(TaskId.reviewer(9)) is None

    @pytest.mark.asyncio()
    async def test_tools_only_for_tool_capable_models(self, tmp_path: Path):
        with_tools = _make_model("r1")
        without_tools = _make_model("r2", supports_tools=False)
        script = _Script(replies={with_tools.model: "a", without_tools.model: "b"})
        tools = RepositoryTools(tmp_path)

        await _run(script, _make_setup(with_tools, without_tools), tools=tools)

        by_model = {c["model"]: c for c in script.calls if not c["validator"]}
        assert by_model[with_tools.model]["tools"] is tools
        assert by_model[without_tools.model]["tools"] is None
        assert "read_file" in by_model[with_tools.model]["system"]
        assert "read_file" not in by_model[without_tools.model]["system"]
        assert script.validator_calls[0]["tools"] is None

    @pytest.mark.asyncio()
    async def test_supplementary_context_in_reviewer_prompt(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: "a"})
        pipeline = ReviewPipeline(script.factory)
        request = _make_request(supplementary_context="Always use tabs.", supplementary_source="AGENTS.md")

        await pipeline.run(request, _make_setup(r1), _settings(), CancellationToken())

        assert "Always use tabs." in script.calls[0]["system"]

    @pytest.mark.asyncio()
    async def test_cancel_aborts_without_validation(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: _HANG})
        pipeline = ReviewPipeline(script.factory)
        cancel = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, cancel.cancel, "interrupted by user")

        with pytest.raises(RunCancelledError):
            await asyncio.wait_for(
                pipeline.run(_make_request(), _make_setup(r1), _settings(), cancel), timeout=5
            )
        assert script.validator_calls == []

    @pytest.mark.asyncio()
    async def test_run_events(self):
        r1 = _make_model("r1")
        script = _Script(replies={r1.model: "a"})
        emitter = ReviewEventEmitter()

        await _run(script, _make_setup(r1), emitter=emitter)

        types = [e.type for e in emitter.history]
        assert types[0] == EventType.RUN_STARTED
        assert EventType.VALIDATION_STARTED in types
        assert types[-1] == EventType.RUN_COMPLETED


# ── Diff preparation ──────────────────────────────────────────


class _DictDiffProvider:
    def __init__(self, per_file: dict[str, str]) -> None:
        self.per_file = per_file

    async def get_diff(self, files):
        return DiffSnapshot(diff="".join(self.per_file[f] for f in files), files=list(files))


class TestPrepareDiff:
    @pytest.mark.asyncio()
    async def test_compacts_into_budget(self):
        provider = _DictDiffProvider({"a.py": "x" * 40, "tests/t.py": "y" * 400})
        snapshot = await provider.get_diff(["a.py", "tests/t.py"])

        result = await prepare_diff(
            snapshot, 20, [GlobCompactionStep("remove-tests", exclude=["tests/*"])], provider
        )

        assert result.files == ["a.py"]

    @pytest.mark.asyncio()
    async def test_over_budget_after_all_steps(self):
        provider = _DictDiffProvider({"a.py": "x" * 400})
        snapshot = await provider.get_diff(["a.py"])

        with pytest.raises(DiffBudgetExceededError):
            await prepare_diff(snapshot, 20, [], provider)
