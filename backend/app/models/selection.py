from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.template import Template

SelectionSource = Literal["smart-selection", "fallback"]


class TemplateSelectionRequest(BaseModel):
    grade: int = Field(ge=1, le=10)
    quarter: Literal["Q1", "Q2", "Q3", "Q4", "ANY"]
    user_id: str = Field(min_length=1)
    count: int = Field(ge=1, le=100)
    domains: Optional[list[str]] = None
    difficulty: Optional[str] = None
    question_types: Optional[list[str]] = None
    min_domain_diversity: Optional[int] = Field(default=None, ge=1)


class SelectionMetrics(BaseModel):
    total_available: int
    domain_coverage: int
    avg_usage_count: float
    diversity_score: float
    anti_repetition_score: float


class TemplateSelectionResult(BaseModel):
    templates: list[Template]
    session_id: str
    selection_metrics: SelectionMetrics
    source: SelectionSource


class UserTemplateHistory(BaseModel):
    """
    Per-key usage summary derived from learning-session rows.

    Session rows only carry (category, grade, date), so `template_id` is the
    synthetic key `template_{category}_{grade}`, not a real template id.
    """

    user_id: str
    template_id: str
    last_used: float          # epoch seconds
    usage_count: int
    correct: Optional[bool] = None
    time_spent: Optional[float] = None
    accuracy: Optional[float] = None


class LearningSession(BaseModel):
    """One finished practice session, as stored in `learning_sessions`."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    category: str
    grade: int
    correct_answers: int = 0
    total_questions: int = 0
    time_spent: float = 0.0
    session_date: datetime
