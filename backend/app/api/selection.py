import logging

from fastapi import APIRouter, Depends, HTTPException

from app.core.deps import get_template_selector
from app.models.selection import TemplateSelectionRequest, TemplateSelectionResult
from app.services.errors import InvalidSelectionRequest, TemplatesUnavailableError
from app.services.telemetry import instrument
from app.services.template_selector import SmartTemplateSelector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/selection", tags=["selection"])


@router.post("/templates", response_model=TemplateSelectionResult)
@instrument(route="/api/selection/templates")
def select_templates(
    request: TemplateSelectionRequest,
    selector: SmartTemplateSelector = Depends(get_template_selector),
):
    """Pick the templates for one learning session."""
    try:
        result = selector.select_templates(request)
    except InvalidSelectionRequest as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except TemplatesUnavailableError as exc:
        logger.error("[selection.select_templates] %s", exc)
        raise HTTPException(status_code=503, detail="Could not load templates")
    if not result.templates:
        logger.error("[selection.select_templates] No templates for grade %d", request.grade)
        raise HTTPException(status_code=503, detail="Could not load templates")
    return result


@router.get("/stats/{user_id}")
@instrument(route="/api/selection/stats")
def selection_stats(
    user_id: str,
    selector: SmartTemplateSelector = Depends(get_template_selector),
):
    return selector.get_selection_stats(user_id)
