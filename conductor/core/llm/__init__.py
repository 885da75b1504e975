"""Planning model providers."""

from conductor.config import LLMConfig
from conductor.core.llm.anthropic import AnthropicPlanningModel
from conductor.core.llm.base import PlanningModel
from conductor.core.llm.local import LocalPlanningModel
from conductor.core.llm.types import Completion

__all__ = [
    "Completion",
    "PlanningModel",
    "AnthropicPlanningModel",
    "LocalPlanningModel",
    "create_model",
]


def create_model(config: LLMConfig) -> PlanningModel:
    """Factory to create the configured planning model."""
    if config.provider == "local":
        return LocalPlanningModel(config)
    return AnthropicPlanningModel(config)
