from __future__ import annotations

from pydantic import BaseModel, Field

from deepresearch.models.research import ResearchDepth


# --- Requests ---


class ResearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=2000)
    depth: ResearchDepth | None = None
    enable_cost_tracking: bool = False
    allow_partial_results: bool = True


# --- Responses ---


class ModelInfo(BaseModel):
    id: str
    tier: str | None = None
    prompt_price_per_million: float
    completion_price_per_million: float


class ModelsResponse(BaseModel):
    models: list[ModelInfo]
    agent_tiers: dict[str, str]
