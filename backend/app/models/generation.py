from pydantic import BaseModel, Field
from typing import Optional

from app.models.curriculum import TemplateGap
from app.models.template import Template


class TemplateGenerationRequest(BaseModel):
    subject: str = "Mathematik"
    grade: int = Field(ge=1, le=10)
    quarter: str
    domain: str
    subcategory: str
    difficulty: str
    question_type: str
    tags: list[str] = Field(default_factory=list)

    @classmethod
    def from_gap(cls, gap: TemplateGap, tags: Optional[list[str]] = None) -> "TemplateGenerationRequest":
        return cls(
            grade=gap.grade,
            quarter=gap.quarter,
            domain=gap.domain,
            subcategory=gap.subcategory,
            difficulty=gap.difficulty,
            question_type=gap.question_type,
            tags=tags or [],
        )


class ContentValidation(BaseModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    quality_score: float = Field(ge=0.0, le=1.0)
    should_exclude: bool = False


class BatchGenerationRequest(BaseModel):
    gaps: list[TemplateGap]
    batch_size: Optional[int] = Field(default=None, ge=1)
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    max_concurrent_requests: Optional[int] = Field(default=None, ge=1)
    target_count: Optional[int] = Field(default=None, ge=1)


class BatchGenerationProgress(BaseModel):
    total_requested: int = 0
    completed: int = 0
    successful: int = 0
    failed: int = 0
    percent_complete: float = 0.0
    current_batch: int = 0
    total_batches: int = 0
    estimated_time_remaining: float = 0.0   # seconds
    errors: list[str] = Field(default_factory=list)


class BatchGenerationResult(BaseModel):
    success: bool
    total_generated: int
    total_rejected: int
    total_saved: int
    progress: BatchGenerationProgress
    generated_templates: list[Template]
    errors: list[str]
    duration: float                         # seconds
