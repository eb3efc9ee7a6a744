from __future__ import annotations

from fastapi import APIRouter

from deepresearch.api.deps import get_agent_tiers, get_available_models
from deepresearch.models.schemas import ModelInfo, ModelsResponse

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models():
    """List priced models and the default tier for each agent role."""
    models = get_available_models()
    return ModelsResponse(models=[ModelInfo(**m) for m in models], agent_tiers=get_agent_tiers())
