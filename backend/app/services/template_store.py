"""
Template persistence.

Query surface used by the selector, the coverage analyzer and the batch
generator. Rows are decoded into typed templates here and nowhere else.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from app.models.template import TemplateBase, decode_templates, template_to_row

logger = logging.getLogger(__name__)

# Prompts that need paper, scissors or a physical object the app can't provide.
# Matched case-insensitively as substrings.
PROMPT_BLACKLIST: tuple[str, ...] = (
    "zeichne", "male", "konstruiere", "bild", "diagramm", "grafik", "netz",
    "skizziere", "bastle", "schneide", "klebe", "falte", "markiere",
    "verbinde mit linien", "miss dein lineal", "länge deines lineals",
    "wie lang ist dein", "miss deinen bleistift", "größe deines", "dein alter",
    "ordne richtig zu", "welches bild passt", "betrachte das bild",
)


@dataclass
class TemplateQuery:
    grade: int
    quarter: Optional[str] = None          # None means any quarter
    min_quality: float = 0.8
    domains: Optional[list[str]] = None
    difficulty: Optional[str] = None
    question_types: Optional[list[str]] = None
    limit: int = 500

    @property
    def cache_key(self) -> tuple:
        return (
            self.grade, self.quarter, self.min_quality, tuple(self.domains or ()),
            self.difficulty, tuple(self.question_types or ()), self.limit,
        )


def is_blacklisted(prompt: str) -> bool:
    lowered = (prompt or "").lower()
    return any(kw in lowered for kw in PROMPT_BLACKLIST)


class TemplateStore:
    def fetch_candidates(self, query: TemplateQuery) -> list:
        """Active, non-blacklisted templates matching `query`, least played first."""
        raise NotImplementedError

    def fetch_random_pool(self, grade: int, limit: int) -> list:
        """Up to `limit` active templates for `grade`, in no particular order."""
        raise NotImplementedError

    def fetch_active_templates(self) -> list:
        raise NotImplementedError

    def increment_plays(self, template_id: str) -> None:
        raise NotImplementedError

    def update_quality(self, template_id: str, quality_score: float, status: Optional[str] = None) -> None:
        raise NotImplementedError

    def insert_templates(self, templates: list[TemplateBase]) -> int:
        raise NotImplementedError


class InMemoryTemplateStore(TemplateStore):
    def __init__(self, templates: Optional[list[TemplateBase]] = None):
        self._lock = threading.Lock()
        self._data: dict[str, TemplateBase] = {}
        for t in templates or []:
            self._data[t.id] = t

    def get(self, template_id: str) -> Optional[TemplateBase]:
        return self._data.get(template_id)

    def _matches(self, t: TemplateBase, q: TemplateQuery) -> bool:
        if t.status != "ACTIVE" or t.grade != q.grade:
            return False
        if q.quarter and t.quarter_app != q.quarter:
            return False
        if t.quality_score < q.min_quality:
            return False
        if q.domains and t.domain not in q.domains:
            return False
        if q.difficulty and t.difficulty != q.difficulty:
            return False
        if q.question_types and t.question_type not in q.question_types:
            return False
        return not is_blacklisted(t.student_prompt)

    def fetch_candidates(self, query: TemplateQuery) -> list:
        with self._lock:
            rows = [t for t in self._data.values() if self._matches(t, query)]
        rows.sort(key=lambda t: t.plays)
        return rows[:query.limit]

    def fetch_random_pool(self, grade: int, limit: int) -> list:
        with self._lock:
            rows = [t for t in self._data.values() if t.status == "ACTIVE" and t.grade == grade]
        return rows[:limit]

    def fetch_active_templates(self) -> list:
        with self._lock:
            return [t for t in self._data.values() if t.status == "ACTIVE"]

    def increment_plays(self, template_id: str) -> None:
        with self._lock:
            t = self._data.get(template_id)
            if t is None:
                raise KeyError(template_id)
            self._data[template_id] = t.model_copy(update={"plays": t.plays + 1})

    def update_quality(self, template_id: str, quality_score: float, status: Optional[str] = None) -> None:
        with self._lock:
            t = self._data.get(template_id)
            if t is None:
                raise KeyError(template_id)
            update = {"quality_score": quality_score}
            if status:
                update["status"] = status
            self._data[template_id] = t.model_copy(update=update)

    def insert_templates(self, templates: list[TemplateBase]) -> int:
        with self._lock:
            for t in templates:
                self._data[t.id] = t
        return len(templates)


class SupabaseTemplateStore(TemplateStore):
    TABLE = "templates"

    def __init__(self, supabase_client):
        self.sb = supabase_client

    def fetch_candidates(self, query: TemplateQuery) -> list:
        q = (
            self.sb.table(self.TABLE)
            .select("*")
            .eq("status", "ACTIVE")
            .eq("grade", query.grade)
            .gte("quality_score", query.min_quality)
        )
        if query.quarter:
            q = q.eq("quarter_app", query.quarter)
        if query.domains:
            q = q.in_("domain", query.domains)
        if query.difficulty:
            q = q.eq("difficulty", query.difficulty)
        if query.question_types:
            q = q.in_("question_type", query.question_types)
        for kw in PROMPT_BLACKLIST:
            q = q.not_.ilike("student_prompt", f"%{kw}%")

        r = q.order("plays", desc=False).limit(query.limit).execute()
        return decode_templates(getattr(r, "data", None) or [])

    def fetch_random_pool(self, grade: int, limit: int) -> list:
        r = (
            self.sb.table(self.TABLE)
            .select("*")
            .eq("status", "ACTIVE")
            .eq("grade", grade)
            .limit(limit)
            .execute()
        )
        return decode_templates(getattr(r, "data", None) or [])

    def fetch_active_templates(self) -> list:
        r = (
            self.sb.table(self.TABLE)
            .select("id, grade, quarter_app, domain, subcategory, difficulty, question_type, "
                    "student_prompt, solution, distractors, quality_score, plays, correct")
            .eq("status", "ACTIVE")
            .execute()
        )
        return decode_templates(getattr(r, "data", None) or [])

    def increment_plays(self, template_id: str) -> None:
        # atomic server-side increment
        self.sb.rpc("increment_template_plays", {"template_id": template_id}).execute()

    def update_quality(self, template_id: str, quality_score: float, status: Optional[str] = None) -> None:
        payload = {"quality_score": quality_score}
        if status:
            payload["status"] = status
        self.sb.table(self.TABLE).update(payload).eq("id", template_id).execute()

    def insert_templates(self, templates: list[TemplateBase]) -> int:
        if not templates:
            return 0
        rows = [template_to_row(t) for t in templates]
        r = self.sb.table(self.TABLE).insert(rows).execute()
        inserted = getattr(r, "data", None) or []
        logger.info("[template_store.insert_templates] Inserted %d templates", len(inserted))
        return len(inserted)
