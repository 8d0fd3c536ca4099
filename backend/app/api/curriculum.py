import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.core.deps import get_curriculum_manager
from app.models.curriculum import CurriculumCoverage
from app.services.curriculum import CurriculumManager
from app.services.telemetry import instrument

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/curriculum", tags=["curriculum"])


@router.get("/coverage", response_model=CurriculumCoverage)
@instrument(route="/api/curriculum/coverage")
def coverage(
    grade: Optional[int] = Query(None, ge=1, le=10),
    priority: Optional[str] = Query(None, pattern="^(HIGH|MEDIUM|LOW)$"),
    manager: CurriculumManager = Depends(get_curriculum_manager),
):
    """Coverage of active templates against the curriculum.

    `grade` and `priority` only filter the returned gap list; the totals always
    describe the whole curriculum.
    """
    result = manager.analyze_coverage()
    if grade is not None or priority is not None:
        result.gaps = [
            g for g in result.gaps
            if (grade is None or g.grade == grade) and (priority is None or g.priority == priority)
        ]
    return result


@router.get("/structure")
def structure(manager: CurriculumManager = Depends(get_curriculum_manager)):
    return manager.get_full_curriculum_structure()


@router.get("/stats")
def stats(manager: CurriculumManager = Depends(get_curriculum_manager)):
    return manager.get_curriculum_stats()
