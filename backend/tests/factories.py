"""Shared builders for offline tests."""
from datetime import datetime, timezone

from app.models.template import decode_template

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def fixed_now():
    return NOW


_counter = {"n": 0}


def make_template(**overrides):
    _counter["n"] += 1
    row = {
        "id": f"t{_counter['n']}",
        "grade": 2,
        "grade_app": 2,
        "quarter_app": "Q1",
        "domain": "Zahlen & Operationen",
        "subcategory": "Addition",
        "difficulty": "AFB I",
        "question_type": "text-input",
        "student_prompt": f"Rechne {_counter['n']} + 3",
        "solution": "x",
        "quality_score": 0.9,
        "plays": 0,
        "correct": 0,
        "status": "ACTIVE",
    }
    row.update(overrides)
    return decode_template(row)


def make_family(id="f1", slots=("location", "character"), category="math", grade_min=1, grade_max=4, **kw):
    from app.models.context import ScenarioFamily
    return ScenarioFamily(
        id=id, name=kw.pop("name", id), category=category,
        grade_min=grade_min, grade_max=grade_max, context_slots=list(slots), **kw,
    )


def make_variant(family_id, dimension, value, cluster=None, usage=0, quality=0.5):
    from app.models.context import ContextVariant
    return ContextVariant(
        id=f"{family_id}:{dimension}:{value}", scenario_family_id=family_id,
        dimension_type=dimension, value=value, semantic_cluster=cluster,
        usage_count=usage, quality_score=quality,
    )


def make_history_entry(context, days_ago=1, family_id="f1", user_id="user-1", category="math", grade=2):
    from datetime import timedelta
    from app.models.context import ContextHistoryEntry
    return ContextHistoryEntry(
        user_id=user_id, category=category, grade=grade,
        context_combination=context, scenario_family_id=family_id,
        session_date=NOW - timedelta(days=days_ago),
    )
