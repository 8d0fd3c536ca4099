import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.core.deps import get_batch_generator
from app.models.generation import BatchGenerationProgress, BatchGenerationRequest, BatchGenerationResult
from app.services.batch_generator import BatchTemplateGenerator
from app.services.errors import BatchAlreadyRunningError
from app.services.telemetry import instrument

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generation", tags=["generation"])


class HighPriorityRequest(BaseModel):
    count: int = Field(default=200, ge=1, le=1000)


@router.post("/batch", response_model=BatchGenerationResult)
@instrument(route="/api/generation/batch")
async def generate_batch(
    req: BatchGenerationRequest,
    generator: BatchTemplateGenerator = Depends(get_batch_generator),
):
    try:
        return await generator.generate_batch(req)
    except BatchAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/high-priority", response_model=BatchGenerationResult)
@instrument(route="/api/generation/high-priority")
async def fill_high_priority(
    req: HighPriorityRequest,
    generator: BatchTemplateGenerator = Depends(get_batch_generator),
):
    """Generate templates for the HIGH priority coverage gaps."""
    try:
        return await generator.fill_high_priority_gaps(req.count)
    except BatchAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.get("/progress", response_model=BatchGenerationProgress)
def progress(generator: BatchTemplateGenerator = Depends(get_batch_generator)):
    return generator.get_current_progress()
