"""
Decoding of storage rows into typed templates.
No Supabase connection required.
"""
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from pydantic import ValidationError

from app.models.template import (
    MatchTemplate,
    MultipleChoiceTemplate,
    SortTemplate,
    TextInputTemplate,
    decode_template,
    decode_templates,
    normalise_question_type,
    template_to_row,
)


def _row(**kw):
    row = {"id": 1, "grade": 3, "domain": "Zahlen & Operationen", "student_prompt": "Was ist 2 + 2?"}
    row.update(kw)
    return row


class TestDecode:
    def test_each_question_type_gets_its_class(self):
        assert isinstance(decode_template(_row(question_type="multiple-choice", distractors=["3"])), MultipleChoiceTemplate)
        assert isinstance(decode_template(_row(question_type="text-input")), TextInputTemplate)
        assert isinstance(decode_template(_row(question_type="sort", items=["1", "2"])), SortTemplate)
        assert isinstance(decode_template(_row(question_type="match", pairs=[["a", "b"]])), MatchTemplate)

    def test_missing_question_type_is_text_input(self):
        assert decode_template(_row()).question_type == "text-input"

    def test_aliases_are_normalised(self):
        t = decode_template(_row(question_type="multiple_choice", distractors=["1"]))
        assert t.question_type == "multiple-choice"
        assert normalise_question_type("Sorting") == "sort"

    def test_id_is_string(self):
        assert decode_template(_row(id=42)).id == "42"

    def test_null_counters_default(self):
        t = decode_template(_row(plays=None, correct=None, rating_count=None, quality_score=None))
        assert t.plays == 0 and t.correct == 0 and t.quality_score == 0.5

    def test_correct_above_plays_is_rejected(self):
        with pytest.raises(ValidationError):
            decode_template(_row(plays=2, correct=3))

    def test_multiple_choice_needs_distractor(self):
        with pytest.raises(ValidationError):
            decode_template(_row(question_type="multiple-choice", distractors=[]))

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValidationError):
            decode_template(_row(question_type="drawing"))


class TestDerivedValues:
    def test_success_rate_and_rating(self):
        t = decode_template(_row(plays=10, correct=4, rating_sum=8, rating_count=2))
        assert t.success_rate == pytest.approx(0.4)
        assert t.average_rating == pytest.approx(4.0)

    def test_unplayed_unrated_is_none(self):
        t = decode_template(_row())
        assert t.success_rate is None
        assert t.average_rating is None

    def test_options_put_solution_first(self):
        t = decode_template(_row(question_type="multiple-choice", solution=4, distractors=["3", "5"]))
        assert t.options == ["4", "3", "5"]


def test_decode_templates_skips_bad_rows():
    rows = [_row(id=1), _row(id=2, plays=1, correct=5), _row(id=3, question_type="???")]
    out = decode_templates(rows)
    assert [t.id for t in out] == ["1"]


def test_template_to_row_is_json_safe():
    row = template_to_row(decode_template(_row(question_type="match", pairs=[["a", "b"]])))
    assert row["question_type"] == "match"
    assert row["pairs"] == [["a", "b"]]
    assert "created_at" not in row
