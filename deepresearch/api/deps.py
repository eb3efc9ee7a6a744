from __future__ import annotations

from fastapi import HTTPException

from deepresearch.agent import ResearchAgent, ResearchAgentConfig
from deepresearch.errors import ValidationError
from deepresearch.models.research import DEFAULT_AGENT_TIERS, DEFAULT_MODELS
from deepresearch.services.cost import MODEL_PRICING


def get_available_models() -> list[dict[str, object]]:
    """Priced models, tagged with the tier they serve by default."""
    tier_by_model = {model: tier.value for tier, model in DEFAULT_MODELS.items()}
    return [
        {
            "id": model_id,
            "tier": tier_by_model.get(model_id),
            "prompt_price_per_million": prompt_rate,
            "completion_price_per_million": completion_rate,
        }
        for model_id, (prompt_rate, completion_rate) in MODEL_PRICING.items()
    ]


def get_agent_tiers() -> dict[str, str]:
    return {role.value: tier.value for role, tier in DEFAULT_AGENT_TIERS.items()}


def get_agent() -> ResearchAgent:
    """Build an agent from the environment. The caller owns closing it."""
    try:
        return ResearchAgent(ResearchAgentConfig.from_settings())
    except ValidationError as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc
