"""
Typed question templates.

Rows coming back from the `templates` table are loosely shaped JSON. They are
decoded exactly once, here, into one of four concrete template classes keyed
by `question_type`. Everything downstream of the stores works on these models.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

TemplateStatus = Literal["ACTIVE", "ARCHIVED"]

QUESTION_TYPES: tuple[str, ...] = ("multiple-choice", "text-input", "sort", "match")

# Spellings seen in older rows / other generators
_QUESTION_TYPE_ALIASES: dict[str, str] = {
    "multiple_choice": "multiple-choice",
    "multiplechoice": "multiple-choice",
    "mc": "multiple-choice",
    "text_input": "text-input",
    "freetext": "text-input",
    "free_text": "text-input",
    "sorting": "sort",
    "matching": "match",
}

# Columns that may come back as NULL but have a meaningful default
_NULLABLE_WITH_DEFAULT = (
    "distractors", "quality_score", "plays", "correct",
    "rating_sum", "rating_count", "status", "student_prompt",
)


class TemplateBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    grade: int = Field(ge=1, le=10)
    grade_app: Optional[int] = None
    quarter_app: Optional[str] = None
    domain: str
    subcategory: Optional[str] = None
    difficulty: Optional[str] = None
    student_prompt: str = ""
    solution: Any = None
    distractors: list[str] = Field(default_factory=list)
    quality_score: float = Field(default=0.5, ge=0.0, le=1.0)
    plays: int = Field(default=0, ge=0)
    correct: int = Field(default=0, ge=0)
    rating_sum: float = 0.0
    rating_count: int = Field(default=0, ge=0)
    status: TemplateStatus = "ACTIVE"
    created_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: v for k, v in data.items()
                if not (k in _NULLABLE_WITH_DEFAULT and v is None)
            }
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @model_validator(mode="after")
    def _check_counters(self):
        if self.correct > self.plays:
            raise ValueError(
                f"template {self.id}: correct ({self.correct}) exceeds plays ({self.plays})"
            )
        return self

    @property
    def success_rate(self) -> Optional[float]:
        """correct / plays, or None for a template nobody has answered yet."""
        if self.plays <= 0:
            return None
        return self.correct / self.plays

    @property
    def average_rating(self) -> Optional[float]:
        """Average star rating on the 0–5 scale, or None when unrated."""
        if self.rating_count <= 0:
            return None
        return self.rating_sum / self.rating_count


class MultipleChoiceTemplate(TemplateBase):
    question_type: Literal["multiple-choice"] = "multiple-choice"

    @field_validator("distractors")
    @classmethod
    def _needs_distractor(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("multiple-choice template needs at least one distractor")
        return v

    @property
    def options(self) -> list[str]:
        return [str(self.solution), *self.distractors] if self.solution is not None else list(self.distractors)


class TextInputTemplate(TemplateBase):
    question_type: Literal["text-input"] = "text-input"


class SortTemplate(TemplateBase):
    question_type: Literal["sort"] = "sort"
    items: list[str] = Field(default_factory=list)


class MatchTemplate(TemplateBase):
    question_type: Literal["match"] = "match"
    pairs: list[tuple[str, str]] = Field(default_factory=list)


Template = Annotated[
    Union[MultipleChoiceTemplate, TextInputTemplate, SortTemplate, MatchTemplate],
    Field(discriminator="question_type"),
]

_TEMPLATE_ADAPTER: TypeAdapter = TypeAdapter(Template)


def normalise_question_type(value: Optional[str]) -> str:
    if not value:
        return "text-input"
    key = str(value).strip().lower()
    return _QUESTION_TYPE_ALIASES.get(key, key)


def decode_template(row: dict) -> Template:
    """
    Decode one storage row into its concrete template class.

    Raises pydantic.ValidationError for unknown question types and rows that
    break the counter invariant (plays >= correct >= 0).
    """
    data = dict(row)
    data["question_type"] = normalise_question_type(data.get("question_type"))
    return _TEMPLATE_ADAPTER.validate_python(data)


def decode_templates(rows: Iterable[dict]) -> list:
    """Decode many rows, logging and skipping the ones that do not validate."""
    out = []
    for row in rows or []:
        try:
            out.append(decode_template(row))
        except ValidationError as exc:
            logger.warning(
                "[template.decode_templates] Skipping template %r: %s",
                (row or {}).get("id"), exc.errors()[0].get("msg", exc),
            )
    return out


def template_to_row(template: TemplateBase) -> dict:
    """Serialise a template back to a JSON-safe row for insertion."""
    return template.model_dump(mode="json", exclude_none=True)
