"""
SmartTemplateSelector against in-memory stores.
No Supabase connection required.
"""
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import random
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app.models.selection import LearningSession, TemplateSelectionRequest
from app.services.errors import InvalidSelectionRequest, TemplatesUnavailableError
from app.services.history_store import InMemoryUserHistoryStore
from app.services.template_selector import SmartTemplateSelector, apply_domain_diversity
from app.services.template_store import InMemoryTemplateStore
from factories import NOW, fixed_now, make_template

ZO = "Zahlen & Operationen"
GM = "Größen & Messen"
RF = "Raum & Form"


def _selector(templates, history=None, seed=7):
    store = InMemoryTemplateStore(templates)
    history = history or InMemoryUserHistoryStore()
    return SmartTemplateSelector(store, history, rng=random.Random(seed), now=fixed_now), store, history


def _request(**kw):
    base = {"grade": 2, "quarter": "Q1", "user_id": "user-1", "count": 4}
    base.update(kw)
    return base


# ---------------------------------------------------------------------------
# Domain diversity
# ---------------------------------------------------------------------------

class TestApplyDomainDiversity:
    def test_takes_best_of_each_domain_first(self):
        a1, a2, a3 = (make_template(domain="A") for _ in range(3))
        b1 = make_template(domain="B")
        out = apply_domain_diversity([a1, a2, a3, b1], 3, 2)
        assert out == [a1, b1, a2]

    def test_stops_when_no_new_domain(self):
        a1, a2 = make_template(domain="A"), make_template(domain="A")
        assert apply_domain_diversity([a1, a2], 5, 3) == [a1, a2]

    def test_count_limits_result(self):
        ts = [make_template(domain=d) for d in "ABCDE"]
        assert len(apply_domain_diversity(ts, 2, 4)) == 2


class TestSelectTemplates:
    def test_mixed_pool_scenario(self):
        """4 unplayed ZO + 6 GM at 50 plays, count=4, two domains required."""
        zo = [make_template(domain=ZO, plays=0) for _ in range(4)]
        gm = [make_template(domain=GM, plays=50, correct=25) for _ in range(6)]
        selector, _, _ = _selector(gm + zo)

        result = selector.select_templates(_request(count=4, min_domain_diversity=2))

        assert result.source == "smart-selection"
        assert len(result.templates) == 4
        domains = [t.domain for t in result.templates]
        assert ZO in domains and GM in domains
        chosen_zo = [t for t in result.templates if t.domain == ZO]
        assert all(t.plays == 0 for t in chosen_zo)
        assert result.selection_metrics.domain_coverage == 2
        assert result.selection_metrics.total_available == 10

    def test_diversity_floor(self):
        pool = (
            [make_template(domain=ZO, plays=0) for _ in range(6)]
            + [make_template(domain=GM, plays=90) for _ in range(2)]
            + [make_template(domain=RF, plays=95) for _ in range(2)]
        )
        selector, _, _ = _selector(pool)
        result = selector.select_templates(_request(count=5, min_domain_diversity=3))
        assert len({t.domain for t in result.templates}) >= 3

    def test_default_min_diversity_is_three(self):
        pool = [make_template(domain=d, plays=i) for i, d in enumerate([ZO, ZO, ZO, GM, RF])]
        selector, _, _ = _selector(pool)
        result = selector.select_templates(_request(count=3))
        assert {t.domain for t in result.templates} == {ZO, GM, RF}

    def test_filters_quality_quarter_and_blacklist(self):
        good = make_template(plays=0)
        low = make_template(quality_score=0.5)
        other_quarter = make_template(quarter_app="Q3")
        drawing = make_template(student_prompt="Zeichne ein Dreieck")
        archived = make_template(status="ARCHIVED")
        selector, _, _ = _selector([good, low, other_quarter, drawing, archived])

        result = selector.select_templates(_request(count=5))
        assert [t.id for t in result.templates] == [good.id]

    def test_any_quarter(self):
        pool = [make_template(quarter_app=q) for q in ("Q1", "Q2", "Q3")]
        selector, _, _ = _selector(pool)
        result = selector.select_templates(_request(quarter="ANY", count=3))
        assert len(result.templates) == 3

    def test_metrics(self):
        pool = [make_template(domain=ZO, plays=10), make_template(domain=GM, plays=30)]
        selector, _, _ = _selector(pool)
        m = selector.select_templates(_request(count=2)).selection_metrics
        assert m.avg_usage_count == pytest.approx(20)
        assert m.anti_repetition_score == pytest.approx(0.8)
        assert m.diversity_score == pytest.approx(0.5)

    def test_increments_plays_of_selected(self):
        t = make_template(plays=3)
        selector, store, _ = _selector([t])
        selector.select_templates(_request(count=1))
        assert store.get(t.id).plays == 4

    def test_two_rapid_selections_increment_twice(self):
        t = make_template(plays=0)
        selector, store, _ = _selector([t])
        first = selector.select_templates(_request(count=1))
        second = selector.select_templates(_request(count=1))
        assert first.templates[0].id == second.templates[0].id == t.id
        assert store.get(t.id).plays == 2

    def test_increment_failure_does_not_fail_selection(self):
        t = make_template()
        selector, store, _ = _selector([t])
        store.increment_plays = MagicMock(side_effect=RuntimeError("db down"))
        result = selector.select_templates(_request(count=1))
        assert result.source == "smart-selection"

    def test_short_pool_returns_what_exists(self):
        selector, _, _ = _selector([make_template(), make_template()])
        result = selector.select_templates(_request(count=10))
        assert len(result.templates) == 2
        assert result.source == "smart-selection"


# ---------------------------------------------------------------------------
# Feedback filtering
# ---------------------------------------------------------------------------

class TestFeedbackFilter:
    def test_flagged_prompt_is_removed(self):
        flagged = make_template(student_prompt="Wie viele Beine hat ein Tisch?")
        ok = make_template()
        history = InMemoryUserHistoryStore()
        history.add_feedback("user-1", flagged.student_prompt, "confusing")
        history.add_feedback("user-1", ok.student_prompt, "too_easy")
        selector, _, _ = _selector([flagged, ok], history)

        result = selector.select_templates(_request(count=2))
        assert [t.id for t in result.templates] == [ok.id]

    def test_other_users_feedback_is_ignored(self):
        t = make_template()
        history = InMemoryUserHistoryStore()
        history.add_feedback("someone-else", t.student_prompt, "inappropriate")
        selector, _, _ = _selector([t], history)
        assert len(selector.select_templates(_request(count=1)).templates) == 1

    def test_feedback_error_is_a_noop(self):
        t = make_template()
        history = InMemoryUserHistoryStore()
        history.fetch_negative_feedback = MagicMock(side_effect=RuntimeError("timeout"))
        selector, _, _ = _selector([t], history)
        assert [x.id for x in selector.select_templates(_request(count=1)).templates] == [t.id]


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------

class TestFallback:
    def test_primary_query_error_uses_fallback(self):
        pool = [make_template() for _ in range(6)]
        selector, store, _ = _selector(pool)
        store.fetch_candidates = MagicMock(side_effect=RuntimeError("query failed"))

        result = selector.select_templates(_request(count=4))
        assert result.source == "fallback"
        assert len(result.templates) == 4
        assert result.session_id.startswith("fallback_")
        m = result.selection_metrics
        assert m.diversity_score == 0 and m.anti_repetition_score == 0 and m.avg_usage_count == 0

    def test_fallback_returns_min_of_count_and_available(self):
        selector, store, _ = _selector([make_template(), make_template()])
        store.fetch_candidates = MagicMock(side_effect=RuntimeError("query failed"))
        assert len(selector.select_templates(_request(count=5)).templates) == 2

    def test_empty_pool_uses_fallback(self):
        # quality too low for the smart path, still good enough for the fallback
        selector, _, _ = _selector([make_template(quality_score=0.3)])
        result = selector.select_templates(_request(count=1))
        assert result.source == "fallback"

    def test_nothing_at_all_is_empty_fallback(self):
        selector, _, _ = _selector([])
        result = selector.select_templates(_request())
        assert result.source == "fallback"
        assert result.templates == []
        assert result.selection_metrics.total_available == 0

    def test_fallback_store_error_raises(self):
        selector, store, _ = _selector([])
        store.fetch_random_pool = MagicMock(side_effect=RuntimeError("down"))
        with pytest.raises(TemplatesUnavailableError):
            selector.fallback_selection(_request())


# ---------------------------------------------------------------------------
# Validation / helpers
# ---------------------------------------------------------------------------

class TestRequestValidation:
    @pytest.mark.parametrize("bad", [
        {"grade": 0}, {"grade": 11}, {"count": 0}, {"quarter": "Q5"},
        {"min_domain_diversity": 0}, {"user_id": ""},
    ])
    def test_invalid_requests_raise(self, bad):
        selector, _, _ = _selector([make_template()])
        with pytest.raises(InvalidSelectionRequest):
            selector.select_templates(_request(**bad))

    def test_model_request_is_accepted(self):
        selector, _, _ = _selector([make_template()])
        req = TemplateSelectionRequest(grade=2, quarter="Q1", user_id="user-1", count=1)
        assert len(selector.select_templates(req).templates) == 1


class TestHistory:
    def _sessions(self):
        history = InMemoryUserHistoryStore()
        for days, correct in ((1, 8), (5, 2), (40, 9)):
            history.add_session(LearningSession(
                user_id="user-1", category="math", grade=2,
                correct_answers=correct, total_questions=10, time_spent=60,
                session_date=NOW - timedelta(days=days),
            ))
        history.add_session(LearningSession(
            user_id="user-1", category="german", grade=2, correct_answers=1, total_questions=4,
            session_date=NOW - timedelta(days=2),
        ))
        return history

    def test_history_keys_are_category_grade(self):
        selector, _, _ = _selector([], self._sessions())
        history = selector.get_user_template_history("user-1")
        assert set(history) == {"template_math_2", "template_german_2"}
        math = history["template_math_2"]
        assert math.usage_count == 2
        assert math.last_used == (NOW - timedelta(days=1)).timestamp()

    def test_history_error_is_empty(self):
        history = InMemoryUserHistoryStore()
        history.fetch_learning_sessions = MagicMock(side_effect=RuntimeError("x"))
        selector, _, _ = _selector([], history)
        assert selector.get_user_template_history("user-1") == {}

    def test_selection_stats(self):
        selector, _, _ = _selector([], self._sessions())
        stats = selector.get_selection_stats("user-1")
        assert stats["total_sessions"] == 3
        assert stats["domains"] == 2
        assert stats["avg_performance"] == pytest.approx((0.8 + 0.2 + 0.25) / 3)
        assert stats["last_activity"] == (NOW - timedelta(days=1)).isoformat()


class TestShortcuts:
    def test_select_for_domain(self):
        pool = [make_template(domain=ZO, quarter_app="Q4"), make_template(domain=GM)]
        selector, _, _ = _selector(pool)
        result = selector.select_for_domain("user-1", 2, ZO, count=2)
        assert [t.domain for t in result.templates] == [ZO]

    def test_select_by_difficulty(self):
        pool = [make_template(difficulty="AFB III"), make_template(difficulty="AFB I")]
        selector, _, _ = _selector(pool)
        result = selector.select_by_difficulty("user-1", 2, "AFB III", count=2)
        assert [t.difficulty for t in result.templates] == ["AFB III"]

    def test_select_for_user(self):
        pool = [make_template(domain=ZO), make_template(domain=GM)]
        selector, _, _ = _selector(pool)
        result = selector.select_for_user("user-1", 2, "Q1", count=2)
        assert {t.domain for t in result.templates} == {ZO, GM}


class TestCandidateCache:
    def test_second_selection_sees_incremented_plays(self):
        from cachetools import TTLCache

        store = InMemoryTemplateStore([make_template()])
        store.fetch_candidates = MagicMock(wraps=store.fetch_candidates)
        selector = SmartTemplateSelector(
            store, InMemoryUserHistoryStore(), rng=random.Random(1), now=fixed_now,
            candidate_cache=TTLCache(maxsize=8, ttl=60),
        )
        first = selector.select_templates(_request(count=1))
        second = selector.select_templates(_request(count=1))
        third = selector.select_templates(_request(count=1))

        assert store.fetch_candidates.call_count == 1
        assert [r.templates[0].plays for r in (first, second, third)] == [0, 1, 2]
        assert store.get(first.templates[0].id).plays == 3

    def test_cached_pool_rotates_like_uncached(self):
        from cachetools import TTLCache

        def run(cache):
            # one extra play costs more score than the 0.01 quality steps
            pool = [make_template(id=f"c{i}", plays=5, quality_score=0.9 - i / 100) for i in range(3)]
            selector = SmartTemplateSelector(
                InMemoryTemplateStore(pool), InMemoryUserHistoryStore(),
                rng=random.Random(1), now=fixed_now, candidate_cache=cache,
            )
            return [selector.select_templates(_request(count=1)).templates[0].id for _ in range(3)]

        cached = run(TTLCache(maxsize=8, ttl=300))
        assert cached == ["c0", "c1", "c2"]
        assert cached == run(None)

    def test_feedback_still_applies_to_cached_pool(self):
        from cachetools import TTLCache

        t = make_template()
        history = InMemoryUserHistoryStore()
        history.add_feedback("user-2", t.student_prompt, "confusing")
        selector = SmartTemplateSelector(
            InMemoryTemplateStore([t, make_template()]), history, rng=random.Random(1), now=fixed_now,
            candidate_cache=TTLCache(maxsize=8, ttl=60),
        )
        selector.select_templates(_request(count=2))
        result = selector.select_templates(_request(count=2, user_id="user-2"))
        assert t.id not in [x.id for x in result.templates]
