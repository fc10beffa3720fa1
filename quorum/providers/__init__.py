"""Quorum provider layer.

All LLM interactions go through LiteLLMProvider via the ModelProvider
interface. The registry loads models, setups and review settings.
"""

from quorum.providers.base import ModelProvider
from quorum.providers.litellm_provider import LiteLLMProvider
from quorum.providers.registry import load_config, load_models, resolve_setup
from quorum.providers.tools import RepositoryTools

__all__ = [
    "LiteLLMProvider",
    "ModelProvider",
    "RepositoryTools",
    "load_config",
    "load_models",
    "resolve_setup",
]
