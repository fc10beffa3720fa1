"""Tests for quorum.providers.registry: TOML config loading and setup resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from quorum.providers.registry import LOGS_DIR_ENV, load_config, load_models, resolve_setup
from quorum.review.errors import ConfigurationError
from quorum.schemas.config import UNBOUNDED, ModelConfig

# Path to the real config files shipped with the package
_CONFIG_DIR = Path(__file__).parent.parent / "quorum" / "config"

_MODELS_TOML = """
[models.alpha]
provider = "anthropic"
model = "anthropic/alpha"
display_name = "Alpha"
api_key_env = "ANTHROPIC_API_KEY"

[models.beta]
provider = "openai"
model = "openai/beta"
display_name = "Beta"
api_key_env = "OPENAI_API_KEY"

[models.beta.provider_options]
reasoning_effort = "low"
"""

_DEFAULTS_TOML = """
[review]
max_diff_tokens = 1000
default_validator = "beta"

[review.concurrency_per_provider]
anthropic = 2

[setups.pair]
reviewers = ["alpha", "beta"]

[setups.solo]
reviewers = ["alpha"]
validator = "alpha"
"""


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture()
def config_files(tmp_path: Path, monkeypatch) -> tuple[Path, Path]:
    # Keep any ./quorum.toml of the developer out of the picture
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(LOGS_DIR_ENV, raising=False)
    return (
        _write(tmp_path / "models.toml", _MODELS_TOML),
        _write(tmp_path / "defaults.toml", _DEFAULTS_TOML),
    )


def _load(config_files, project: Path | None = None):
    models, defaults = config_files
    return load_config(project, models_path=models, defaults_path=defaults)


# ── Packaged config ───────────────────────────────────────────


class TestPackagedConfig:
    def test_loads_real_models(self):
        registry = load_models(_CONFIG_DIR / "models.toml")
        assert len(registry) > 0
        for key, model in registry.items():
            assert isinstance(model, ModelConfig), key
            assert model.provider
            assert model.model

    def test_real_setups_resolve(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        for setup_id in config.setups:
            setup = resolve_setup(config, setup_id)
            assert setup.reviewers

    def test_default_validator_known(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config.review.default_validator in config.models


# ── load_models ───────────────────────────────────────────────


class TestLoadModels:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_models(tmp_path / "missing.toml")

    def test_no_models_section(self, tmp_path):
        path = _write(tmp_path / "m.toml", "[other]\nx = 1\n")
        with pytest.raises(ConfigurationError, match="No \\[models\\] section"):
            load_models(path)

    def test_malformed_toml(self, tmp_path):
        path = _write(tmp_path / "m.toml", "[models.alpha\n")
        with pytest.raises(ConfigurationError, match="Malformed TOML"):
            load_models(path)

    def test_invalid_model(self, tmp_path):
        path = _write(tmp_path / "m.toml", '[models.bad]\nprovider = "x"\n')
        with pytest.raises(ConfigurationError, match="Invalid model 'bad'"):
            load_models(path)

    def test_provider_options_loaded(self, config_files):
        registry = load_models(config_files[0])
        assert registry["beta"].provider_options == {"reasoning_effort": "low"}


# ── load_config ───────────────────────────────────────────────


class TestLoadConfig:
    def test_defaults(self, config_files):
        config = _load(config_files)
        assert set(config.models) == {"alpha", "beta"}
        assert set(config.setups) == {"pair", "solo"}
        assert config.setups["pair"].id == "pair"
        assert config.review.max_diff_tokens == 1000
        assert config.review.ceiling_for("anthropic") == 2
        assert config.review.ceiling_for("openai") == UNBOUNDED

    def test_project_overrides_review_keys(self, config_files, tmp_path):
        project = _write(
            tmp_path / "quorum.toml",
            "[review]\nmax_diff_tokens = 5000\n\n[review.concurrency_per_provider]\nopenai = 1\n",
        )
        config = _load(config_files, project)
        assert config.review.max_diff_tokens == 5000
        assert config.review.default_validator == "beta"
        assert config.review.concurrency_per_provider == {"anthropic": 2, "openai": 1}

    def test_project_adds_models_and_setups(self, config_files, tmp_path):
        project = _write(
            tmp_path / "quorum.toml",
            '[models.gamma]\nprovider = "gemini"\nmodel = "gemini/gamma"\n'
            'display_name = "Gamma"\napi_key_env = "GEMINI_API_KEY"\n\n'
            '[setups.trio]\nreviewers = ["alpha", "beta", "gamma"]\n',
        )
        config = _load(config_files, project)
        assert "gamma" in config.models
        assert "trio" in config.setups
        assert "pair" in config.setups

    def test_cwd_project_file_picked_up(self, config_files, tmp_path):
        _write(tmp_path / "quorum.toml", "[review]\nbase_branch = \"develop\"\n")
        assert _load(config_files).review.base_branch == "develop"

    def test_explicit_missing_project_file(self, config_files, tmp_path):
        with pytest.raises(ConfigurationError, match="Config file not found"):
            _load(config_files, tmp_path / "nope.toml")

    def test_invalid_review_value(self, config_files, tmp_path):
        project = _write(tmp_path / "quorum.toml", "[review]\nmax_diff_tokens = -5\n")
        with pytest.raises(ConfigurationError, match="Invalid review configuration"):
            _load(config_files, project)

    def test_logs_dir_from_environment(self, config_files, monkeypatch):
        monkeypatch.setenv(LOGS_DIR_ENV, "/tmp/quorum-logs")
        assert _load(config_files).review.logs_dir == "/tmp/quorum-logs"

    def test_configured_logs_dir_wins(self, config_files, tmp_path, monkeypatch):
        monkeypatch.setenv(LOGS_DIR_ENV, "/tmp/env-logs")
        project = _write(tmp_path / "quorum.toml", '[review]\nlogs_dir = "file-logs"\n')
        assert _load(config_files, project).review.logs_dir == "file-logs"


# ── resolve_setup ─────────────────────────────────────────────


class TestResolveSetup:
    def test_default_validator_used(self, config_files):
        setup = resolve_setup(_load(config_files), "pair")
        assert [m.display_name for m in setup.reviewers] == ["Alpha", "Beta"]
        assert setup.validator.display_name == "Beta"

    def test_setup_validator_wins(self, config_files):
        setup = resolve_setup(_load(config_files), "solo")
        assert setup.validator.display_name == "Alpha"

    def test_first_reviewer_fallback(self, config_files, tmp_path):
        project = _write(tmp_path / "quorum.toml", '[review]\ndefault_validator = ""\n')
        setup = resolve_setup(_load(config_files, project), "pair")
        assert setup.validator.display_name == "Alpha"

    def test_unknown_setup(self, config_files):
        with pytest.raises(ConfigurationError, match="Unknown setup 'nope'"):
            resolve_setup(_load(config_files), "nope")

    def test_unknown_models_listed(self, config_files, tmp_path):
        project = _write(
            tmp_path / "quorum.toml",
            '[setups.broken]\nreviewers = ["alpha", "ghost"]\nvalidator = "phantom"\n',
        )
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_setup(_load(config_files, project), "broken")
        assert exc_info.value.problems == ["unknown model: ghost", "unknown model: phantom"]
