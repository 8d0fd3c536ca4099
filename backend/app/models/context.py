from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# dimension name -> chosen value, e.g. {"location": "Bäckerei", "character": "Bäcker"}
ContextCombination = dict[str, str]


class ScenarioFamily(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    category: str
    grade_min: int
    grade_max: int
    base_template: str = ""
    context_slots: dict[str, Any] = Field(default_factory=dict)
    difficulty_level: str = "medium"

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v):
        return str(v)

    @field_validator("context_slots", mode="before")
    @classmethod
    def _slots_or_empty(cls, v):
        # JSONB column; old rows store a list of dimension names
        if v is None:
            return {}
        if isinstance(v, list):
            return {str(name): {} for name in v}
        return v


class ContextVariant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    scenario_family_id: str
    dimension_type: str
    value: str
    semantic_cluster: Optional[str] = None
    usage_count: int = 0
    quality_score: float = 0.5

    @field_validator("id", "scenario_family_id", mode="before")
    @classmethod
    def _as_str(cls, v):
        return str(v)

    @field_validator("usage_count", mode="before")
    @classmethod
    def _usage_or_zero(cls, v):
        return 0 if v is None else v

    @field_validator("quality_score", mode="before")
    @classmethod
    def _quality_or_default(cls, v):
        return 0.5 if v is None else v


class ContextHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    category: str
    grade: int
    context_combination: dict[str, str]
    context_hash: Optional[str] = None
    scenario_family_id: Optional[str] = None
    question_id: Optional[str] = None
    session_date: datetime


class DiversityMetrics(BaseModel):
    context_repetition_rate: float   # CRR, lower is better
    semantic_distance_score: float   # SDS, higher is better
    scenario_family_coverage: float  # SFC, higher is better
    user_engagement_score: float     # UES, higher is better


class SmartRotationMetrics(BaseModel):
    context_utilization_rate: float
    rotation_effectiveness: float
    user_engagement_improvement: float
    template_variety_score: float
    cognitive_load_balance: float


@dataclass
class UserContextPool:
    """Rolling per-user view of recently used contexts (newest first)."""

    user_id: str
    category: str
    grade: int
    recent_contexts: list[ContextCombination] = field(default_factory=list)
    preferred_contexts: list[ContextCombination] = field(default_factory=list)
    banned_contexts: list[ContextCombination] = field(default_factory=list)
    last_rotation_date: Optional[datetime] = None
    # context hash -> occurrences inside the rotation history window
    occurrences: dict[str, int] = field(default_factory=dict)
    # context hash -> the combination itself, first seen (newest) wins
    contexts_by_hash: dict[str, ContextCombination] = field(default_factory=dict)
    additions: int = 0
