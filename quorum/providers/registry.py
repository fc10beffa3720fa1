"""Model registry and TOML configuration loader.

Loads model definitions from models.toml, review defaults and setups from
defaults.toml, then layers an optional project quorum.toml on top. Also
resolves a setup id into concrete reviewer and validator model configs.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from quorum.review.errors import ConfigurationError
from quorum.schemas.config import (
    ModelConfig,
    QuorumConfig,
    ReviewSettings,
    ReviewSetup,
    SetupConfig,
)

# Default config directory relative to the quorum package
_CONFIG_DIR = Path(__file__).parent.parent / "config"

PROJECT_CONFIG_NAME = "quorum.toml"
LOGS_DIR_ENV = "QUORUM_LOGS_DIR"


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Malformed TOML in {path}: {e}") from e


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into ``base``; nested tables merge, other values replace."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_models(config_path: Path | None = None) -> dict[str, ModelConfig]:
    """Load the model registry from a TOML file.

    Args:
        config_path: Path to models.toml. Defaults to quorum/config/models.toml.

    Returns:
        Dictionary mapping model keys to ModelConfig instances.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If the TOML structure is invalid.
    """
    path = config_path or _CONFIG_DIR / "models.toml"
    if not path.exists():
        raise FileNotFoundError(f"Model registry not found: {path}")

    raw = _read_toml(path)
    models_section = raw.get("models")
    if not models_section or not isinstance(models_section, dict):
        raise ConfigurationError(f"No [models] section found in {path}")

    return _parse_models(models_section, path)


def _parse_models(section: dict[str, Any], source: Path | str) -> dict[str, ModelConfig]:
    registry: dict[str, ModelConfig] = {}
    for key, entry in section.items():
        if not isinstance(entry, dict):
            continue
        try:
            registry[key] = ModelConfig(**entry)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid model '{key}' in {source}: {e}") from e
    return registry


def load_config(
    project_path: Path | None = None,
    *,
    models_path: Path | None = None,
    defaults_path: Path | None = None,
) -> QuorumConfig:
    """Load the merged Quorum configuration.

    Packaged models.toml and defaults.toml are loaded first; a project
    quorum.toml (explicit path, or ./quorum.toml when present) overrides
    [review] keys and adds or replaces [models.*] and [setups.*] entries.

    Args:
        project_path: Explicit project config path.
        models_path: Override for the packaged models.toml.
        defaults_path: Override for the packaged defaults.toml.

    Returns:
        The merged QuorumConfig.

    Raises:
        ConfigurationError: If any file is missing, malformed or invalid.
    """
    models = load_models(models_path)

    defaults_file = defaults_path or _CONFIG_DIR / "defaults.toml"
    if not defaults_file.exists():
        raise FileNotFoundError(f"Review defaults not found: {defaults_file}")
    raw = _read_toml(defaults_file)

    if project_path is not None and not project_path.exists():
        raise ConfigurationError(f"Config file not found: {project_path}")
    project_file = project_path or Path.cwd() / PROJECT_CONFIG_NAME
    if project_file.exists():
        project_raw = _read_toml(project_file)
        models.update(_parse_models(project_raw.get("models", {}), project_file))
        raw = _deep_merge(raw, {k: v for k, v in project_raw.items() if k != "models"})

    review_raw = dict(raw.get("review", {}))
    if not review_raw.get("logs_dir") and os.environ.get(LOGS_DIR_ENV):
        review_raw["logs_dir"] = os.environ[LOGS_DIR_ENV]

    try:
        review = ReviewSettings(**review_raw)
        setups = {
            key: SetupConfig(id=key, **entry)
            for key, entry in raw.get("setups", {}).items()
            if isinstance(entry, dict)
        }
    except ValidationError as e:
        raise ConfigurationError(f"Invalid review configuration: {e}") from e

    return QuorumConfig(models=models, setups=setups, review=review)


def resolve_setup(config: QuorumConfig, setup_id: str) -> ReviewSetup:
    """Resolve a setup id into reviewer and validator model configs.

    Validator precedence: the setup's own validator, then
    ``review.default_validator``, then the first reviewer.

    Raises:
        ConfigurationError: If the setup or any referenced model is unknown.
    """
    setup = config.setups.get(setup_id)
    if setup is None:
        available = ", ".join(sorted(config.setups)) or "none"
        raise ConfigurationError(f"Unknown setup '{setup_id}' (available: {available})")

    missing = [key for key in setup.reviewers if key not in config.models]
    validator_key = setup.validator or config.review.default_validator or setup.reviewers[0]
    if validator_key not in config.models:
        missing.append(validator_key)
    if missing:
        raise ConfigurationError(
            f"Setup '{setup_id}' references unknown models: {', '.join(missing)}",
            problems=[f"unknown model: {key}" for key in missing],
        )

    return ReviewSetup(
        id=setup_id,
        reviewers=[config.models[key] for key in setup.reviewers],
        validator=config.models[validator_key],
    )
