"""
Curriculum model and coverage analyzer.

The curriculum table (app/data/math_curriculum.json) lists, per grade and
quarter, the domains taught and the subcategories (skills) inside each domain.
Coverage analysis crosses every (grade, quarter, domain) cell present in that
table with 3 difficulty levels and 4 question types, counts the active
templates that exactly match each cell, and reports the cells below target as
prioritised gaps.

All functions here are pure over their inputs plus the static table; the only
I/O is the optional read of active templates from the template store, which
is fail-open.
"""
from __future__ import annotations

import json
import logging
from collections import Counter, defaultdict
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Optional

from app.models.curriculum import ComplianceReport, CurriculumCoverage, CurriculumItem, TemplateGap
from app.models.template import QUESTION_TYPES, normalise_question_type

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GRADES: tuple[int, ...] = tuple(range(1, 11))
QUARTERS: tuple[str, ...] = ("Q1", "Q2", "Q3", "Q4")
DIFFICULTIES: tuple[str, ...] = ("AFB I", "AFB II", "AFB III")

DEFAULT_TARGET_PER_COMBINATION = 8

# Domains whose empty cells are always urgent
CORE_DOMAINS: frozenset[str] = frozenset({"Zahlen & Operationen", "Größen & Messen"})

_PRIORITY_ORDER = {"HIGH": 0, "MEDIUM": 1, "LOW": 2}

_CURRICULUM_PATH = Path(__file__).parent.parent / "data" / "math_curriculum.json"

_VISUAL_WORDS = (
    "zeichne", "male", "konstruiere", "skizziere", "bild", "diagramm",
    "grafik", "welches bild", "netz", "ordne zu", "verbinde",
)
_GRADE1_EMOJI = ("🍎", "🍌", "⭐", "🔢")

# Vocabulary introduced at each grade; a word is too advanced below its grade
_COMPLEX_WORDS: dict[int, tuple[str, ...]] = {
    3: ("bruch", "dezimal"),
    4: ("prozent", "dezimal", "variable"),
    5: ("funktion", "gleichung", "term"),
    6: ("potenz", "wurzel"),
    7: ("sinus", "kosinus", "tangens"),
    8: ("logarithmus", "exponential"),
    9: ("integral", "ableitung"),
    10: ("grenzwert", "konvergenz"),
}


# ---------------------------------------------------------------------------
# Curriculum table loading
# ---------------------------------------------------------------------------

@lru_cache(maxsize=4)
def load_curriculum(path: Optional[str] = None) -> tuple[CurriculumItem, ...]:
    """Load the static curriculum table. Immutable, so cached per path."""
    source = Path(path) if path else _CURRICULUM_PATH
    with open(source, encoding="utf-8") as f:
        raw = json.load(f)

    items: list[CurriculumItem] = []
    for grade_entry in raw.get("grades", []):
        grade = int(grade_entry["grade"])
        for quarter, domains in grade_entry.get("quarters", {}).items():
            for domain, entries in domains.items():
                for entry in entries:
                    items.append(CurriculumItem(
                        grade=grade,
                        quarter=quarter,
                        domain=domain,
                        subcategory=entry["subcategory"],
                        skill=entry.get("skill") or entry["subcategory"],
                        tags=tuple(entry.get("tags", [])),
                    ))
    logger.debug("[curriculum] Loaded %d curriculum items from %s", len(items), source)
    return tuple(items)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def calculate_priority(grade: int, quarter: str, domain: str, current_count: int) -> str:
    """HIGH / MEDIUM / LOW priority for one uncovered cell."""
    if current_count == 0 and domain in CORE_DOMAINS:
        return "HIGH"
    if grade <= 4 and current_count < 2:
        return "HIGH"
    if 0 < current_count < 4:
        return "MEDIUM"
    return "LOW"


def _get(template: Any, name: str) -> Any:
    if isinstance(template, dict):
        return template.get(name)
    return getattr(template, name, None)


def coverage_key(template: Any) -> tuple:
    """Exact-match group-by key used to count templates per cell."""
    return (
        _get(template, "grade"),
        _get(template, "quarter_app"),
        _get(template, "domain"),
        _get(template, "difficulty"),
        normalise_question_type(_get(template, "question_type")),
    )


def generate_recommendations(gaps: list[TemplateGap]) -> list[str]:
    recommendations: list[str] = []

    high = sum(1 for g in gaps if g.priority == "HIGH")
    if high:
        recommendations.append(f"{high} high-priority gaps need immediate attention")

    per_grade = Counter(g.grade for g in gaps)
    for grade, count in sorted(per_grade.items()):
        if count > 50:
            recommendations.append(f"Klasse {grade}: {count} gaps - prioritize full grade coverage")

    per_domain = Counter(g.domain for g in gaps)
    for domain, count in sorted(per_domain.items()):
        if count > 100:
            recommendations.append(f"{domain}: {count} gaps - needs systematic generation")

    return recommendations


def contains_visual_elements(prompt: str, grade: int) -> bool:
    if grade == 1 and any(e in prompt for e in _GRADE1_EMOJI):
        return False
    lowered = prompt.lower()
    return any(word in lowered for word in _VISUAL_WORDS)


def is_age_appropriate(prompt: str, grade: int) -> bool:
    allowed = {w for g, words in _COMPLEX_WORDS.items() if g <= grade for w in words}
    advanced = {w for words in _COMPLEX_WORDS.values() for w in words}
    return not any(
        word in advanced and word not in allowed
        for word in prompt.lower().split()
    )


# ---------------------------------------------------------------------------
# CurriculumManager
# ---------------------------------------------------------------------------

class CurriculumManager:
    """
    Owns the curriculum table and computes template coverage against it.

    Usage:
        manager = CurriculumManager(load_curriculum(), target_per_combination=8)
        coverage = manager.analyze_coverage(templates)
    """

    def __init__(
        self,
        items: Iterable[CurriculumItem],
        target_per_combination: int = DEFAULT_TARGET_PER_COMBINATION,
        template_store=None,
    ):
        self.items: tuple[CurriculumItem, ...] = tuple(items)
        self.target_per_combination = target_per_combination
        self.template_store = template_store

        # grade -> quarter -> domain -> [subcategories] (table order preserved)
        self._structure: dict[int, dict[str, dict[str, list[str]]]] = defaultdict(
            lambda: defaultdict(dict)
        )
        for item in self.items:
            self._structure[item.grade][item.quarter].setdefault(item.domain, []).append(item.subcategory)

    # -----------------------------------------------------------------------
    # Coverage
    # -----------------------------------------------------------------------

    def iter_cells(self):
        """Yield (grade, quarter, domain, subcategories) for every curriculum cell."""
        for grade in GRADES:
            quarters = self._structure.get(grade, {})
            for quarter in QUARTERS:
                for domain, subcategories in quarters.get(quarter, {}).items():
                    yield grade, quarter, domain, subcategories

    def calculate_total_combinations(self) -> int:
        per_cell = len(DIFFICULTIES) * len(QUESTION_TYPES)
        return sum(per_cell for _ in self.iter_cells())

    def _load_active_templates(self) -> list:
        if self.template_store is None:
            logger.warning("[curriculum.analyze_coverage] No template store configured; analysing 0 templates")
            return []
        try:
            return self.template_store.fetch_active_templates()
        except Exception as exc:
            logger.error("[curriculum.analyze_coverage] Failed to fetch active templates: %s", exc)
            return []

    def analyze_coverage(self, existing_templates: Optional[list] = None) -> CurriculumCoverage:
        """
        Compare existing templates against the curriculum.

        A cell counts as covered when it holds at least target_per_combination
        templates. Every other cell becomes exactly one gap, so
        len(gaps) + covered_combinations == total_combinations.
        """
        if existing_templates is None:
            existing_templates = self._load_active_templates()

        counts = Counter(coverage_key(t) for t in existing_templates)
        gaps: list[TemplateGap] = []
        covered = 0

        for grade, quarter, domain, subcategories in self.iter_cells():
            for d_idx, difficulty in enumerate(DIFFICULTIES):
                for t_idx, question_type in enumerate(QUESTION_TYPES):
                    current = counts.get((grade, quarter, domain, difficulty, question_type), 0)
                    if current >= self.target_per_combination:
                        covered += 1
                        continue
                    # spread gaps of one cell over its subcategories
                    sub = subcategories[(d_idx * len(QUESTION_TYPES) + t_idx) % len(subcategories)]
                    gaps.append(TemplateGap(
                        grade=grade,
                        quarter=quarter,
                        domain=domain,
                        subcategory=sub,
                        difficulty=difficulty,
                        question_type=question_type,
                        current_count=current,
                        target_count=self.target_per_combination,
                        priority=calculate_priority(grade, quarter, domain, current),
                    ))

        total = self.calculate_total_combinations()
        percentage = (covered / total * 100) if total else 0.0
        gaps.sort(key=lambda g: _PRIORITY_ORDER[g.priority])

        logger.info(
            "[curriculum.analyze_coverage] %d/%d combinations covered (%.1f%%), %d gaps",
            covered, total, percentage, len(gaps),
        )
        return CurriculumCoverage(
            total_combinations=total,
            covered_combinations=covered,
            coverage_percentage=percentage,
            gaps=gaps,
            recommendations=generate_recommendations(gaps),
        )

    def get_priority_generation_queue(self, gaps: list[TemplateGap], batch_size: int = 100) -> list[TemplateGap]:
        """HIGH gaps first (up to batch_size), then MEDIUM gaps to fill the rest."""
        high = [g for g in gaps if g.priority == "HIGH"]
        medium = [g for g in gaps if g.priority == "MEDIUM"]
        queue = high[:batch_size]
        return queue + medium[:max(0, batch_size - len(queue))]

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    def get_curriculum_context(self, grade: int, quarter: str, domain: str) -> list[str]:
        return list(self._structure.get(grade, {}).get(quarter, {}).get(domain, []))

    def get_full_curriculum_structure(self) -> dict:
        return {
            grade: {quarter: dict(domains) for quarter, domains in quarters.items()}
            for grade, quarters in sorted(self._structure.items())
        }

    def get_curriculum_stats(self) -> dict:
        return {
            "grades": len(self._structure),
            "total_domains": len({i.domain for i in self.items}),
            "total_quarters": len({i.quarter for i in self.items}),
            "total_skills": len(self.items),
        }

    def validate_curriculum_compliance(self, template: Any) -> ComplianceReport:
        """Check a candidate template against the curriculum and content rules."""
        issues: list[str] = []
        grade = _get(template, "grade") or 0
        quarter = _get(template, "quarter_app")
        domain = _get(template, "domain")
        prompt = _get(template, "student_prompt") or ""

        if grade < 1 or grade > 10:
            issues.append(f"Invalid grade: {grade}")

        if not self.get_curriculum_context(grade, quarter, domain):
            issues.append(f'Domain "{domain}" not found for Grade {grade} {quarter}')

        if prompt and contains_visual_elements(prompt, grade):
            issues.append("Contains forbidden visual elements")

        if not is_age_appropriate(prompt, grade):
            issues.append("Content too complex for grade level")

        return ComplianceReport(is_compliant=not issues, issues=issues)
