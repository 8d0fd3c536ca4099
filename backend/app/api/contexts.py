import logging
from typing import Optional

from cachetools import TTLCache
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.config import get_settings
from app.core.deps import get_context_cache, get_context_pool_cache, get_history_store, get_scenario_store
from app.models.context import ContextCombination, DiversityMetrics, SmartRotationMetrics
from app.services.context_diversity import ContextDiversityEngine
from app.services.context_rotation import SmartContextRotationEngine
from app.services.history_store import UserHistoryStore
from app.services.scenario_store import ScenarioStore
from app.services.telemetry import instrument

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contexts", tags=["contexts"])


class RotateContextsRequest(BaseModel):
    user_id: str = Field(min_length=1)
    category: str = "math"
    grade: int = Field(ge=1, le=10)
    count: int = Field(default=5, ge=1, le=50)


class RotatedContext(BaseModel):
    """One context to show; send both fields back to /record once it was used."""
    context: ContextCombination
    scenario_family_id: Optional[str] = None


class RotateContextsResponse(BaseModel):
    contexts: list[RotatedContext]
    prompt_instructions: str
    metrics: SmartRotationMetrics


class RecordContextRequest(BaseModel):
    user_id: str = Field(min_length=1)
    category: str = "math"
    grade: int = Field(ge=1, le=10)
    context: ContextCombination
    scenario_family_id: Optional[str] = None
    question_id: Optional[str] = None


class ContextMetricsResponse(BaseModel):
    diversity: DiversityMetrics
    rotation: SmartRotationMetrics


def _engines(user_id, category, grade, scenario_store, history_store, cache, pool_cache):
    settings = get_settings()
    diversity = ContextDiversityEngine(
        user_id, category, grade,
        scenario_store=scenario_store,
        history_store=history_store,
        history_days=settings.context_history_days,
        cache=cache,
    )
    rotation = SmartContextRotationEngine(
        diversity,
        pool_cache=pool_cache,
        history_days=settings.rotation_history_days,
    )
    return diversity, rotation


@router.post("/rotate", response_model=RotateContextsResponse)
@instrument(route="/api/contexts/rotate")
def rotate_contexts(
    req: RotateContextsRequest,
    scenario_store: ScenarioStore = Depends(get_scenario_store),
    history_store: UserHistoryStore = Depends(get_history_store),
    cache: TTLCache = Depends(get_context_cache),
    pool_cache: TTLCache = Depends(get_context_pool_cache),
):
    """Next contexts for a user plus the prompt block that steers generation towards them."""
    _, rotation = _engines(req.user_id, req.category, req.grade, scenario_store, history_store, cache, pool_cache)
    entries = rotation.generate_smart_rotated_entries(req.count)
    metrics = rotation.calculate_smart_rotation_metrics()
    return RotateContextsResponse(
        contexts=[RotatedContext(context=ctx, scenario_family_id=fid) for fid, ctx in entries],
        prompt_instructions=rotation.get_smart_rotation_prompt_instructions([ctx for _, ctx in entries], metrics),
        metrics=metrics,
    )


@router.post("/record")
def record_context(
    req: RecordContextRequest,
    scenario_store: ScenarioStore = Depends(get_scenario_store),
    history_store: UserHistoryStore = Depends(get_history_store),
    cache: TTLCache = Depends(get_context_cache),
    pool_cache: TTLCache = Depends(get_context_pool_cache),
):
    diversity, _ = _engines(req.user_id, req.category, req.grade, scenario_store, history_store, cache, pool_cache)
    ok = diversity.record_context_usage(req.context, req.scenario_family_id, req.question_id)
    return {"recorded": ok}


@router.get("/metrics", response_model=ContextMetricsResponse)
def context_metrics(
    user_id: str = Query(..., min_length=1),
    grade: int = Query(..., ge=1, le=10),
    category: str = Query("math"),
    days: int = Query(7, ge=1, le=90),
    scenario_store: ScenarioStore = Depends(get_scenario_store),
    history_store: UserHistoryStore = Depends(get_history_store),
    cache: TTLCache = Depends(get_context_cache),
    pool_cache: TTLCache = Depends(get_context_pool_cache),
):
    diversity, rotation = _engines(user_id, category, grade, scenario_store, history_store, cache, pool_cache)
    return ContextMetricsResponse(
        diversity=diversity.calculate_diversity_metrics(days),
        rotation=rotation.calculate_smart_rotation_metrics(),
    )
