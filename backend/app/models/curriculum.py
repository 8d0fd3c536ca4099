from pydantic import BaseModel, ConfigDict, Field
from typing import Literal

Quarter = Literal["Q1", "Q2", "Q3", "Q4"]
GapPriority = Literal["HIGH", "MEDIUM", "LOW"]


class CurriculumItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    grade: int = Field(ge=1, le=10)
    quarter: Quarter
    domain: str
    subcategory: str
    skill: str
    tags: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[int, str, str, str]:
        return (self.grade, self.quarter, self.domain, self.subcategory)


class TemplateGap(BaseModel):
    grade: int
    quarter: Quarter
    domain: str
    subcategory: str
    difficulty: str
    question_type: str
    current_count: int
    target_count: int
    priority: GapPriority


class CurriculumCoverage(BaseModel):
    total_combinations: int
    covered_combinations: int
    coverage_percentage: float
    gaps: list[TemplateGap]
    recommendations: list[str]


class ComplianceReport(BaseModel):
    is_compliant: bool
    issues: list[str]
