"""
Smart template selector.

Picks the templates for one learning session:

  1. fetch the candidate pool (active, grade/quarter match, quality >= 0.8,
     prompt blacklist applied by the store, least played first, max 500)
  2. drop prompts the user flagged as confusing / inappropriate / off-curriculum
  3. load the user's last-30-days session history
  4. score every candidate (see app.services.scoring)
  5. assemble the session honouring a minimum number of distinct domains
  6. bump `plays` on every selected template

Any failure or an empty pool in step 1 switches to `fallback_selection`, a
random sample reported with source="fallback". History and feedback failures
only degrade filtering; they never fail the selection.
"""
from __future__ import annotations

import logging
import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from cachetools import TTLCache
from pydantic import ValidationError

from app.models.selection import (
    SelectionMetrics,
    TemplateSelectionRequest,
    TemplateSelectionResult,
    UserTemplateHistory,
)
from app.services.errors import InvalidSelectionRequest, TemplatesUnavailableError
from app.services.history_store import UserHistoryStore
from app.services.scoring import calculate_template_score
from app.services.telemetry import selection_event
from app.services.template_store import TemplateQuery, TemplateStore

logger = logging.getLogger(__name__)

# Main math domains; diversity_score is normalised against this
MAIN_DOMAIN_COUNT = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_domain_diversity(templates: list, target_count: int, min_domains: int) -> list:
    """
    Assemble up to `target_count` templates from a score-sorted list.

    First takes the best template of each not-yet-used domain until
    `min_domains` domains are represented (or none are left), then fills the
    remaining slots strictly by score.
    """
    selected: list = []
    domains_used: set[str] = set()
    remaining = list(templates)

    while len(selected) < target_count and len(domains_used) < min_domains and remaining:
        pick = next((t for t in remaining if t.domain not in domains_used), None)
        if pick is None:
            break
        selected.append(pick)
        domains_used.add(pick.domain)
        remaining.remove(pick)

    while len(selected) < target_count and remaining:
        selected.append(remaining.pop(0))

    return selected


def calculate_selection_metrics(selected: list, available: list) -> SelectionMetrics:
    domains = {t.domain for t in selected}
    avg_usage = (sum(t.plays for t in selected) / len(selected)) if selected else 0.0
    return SelectionMetrics(
        total_available=len(available),
        domain_coverage=len(domains),
        avg_usage_count=avg_usage,
        diversity_score=min(1.0, len(domains) / MAIN_DOMAIN_COUNT),
        anti_repetition_score=1 - avg_usage / 100,
    )


class SmartTemplateSelector:
    def __init__(
        self,
        template_store: TemplateStore,
        history_store: UserHistoryStore,
        min_quality_score: float = 0.8,
        pool_limit: int = 500,
        history_days: int = 30,
        rng: Optional[random.Random] = None,
        now: Optional[Callable[[], datetime]] = None,
        candidate_cache: Optional[TTLCache] = None,
    ):
        self.template_store = template_store
        self.history_store = history_store
        self.min_quality_score = min_quality_score
        self.pool_limit = pool_limit
        self.history_days = history_days
        self._rng = rng or random.Random()
        self._now = now or _utcnow
        # query -> candidate pool; None disables caching
        self._candidates = candidate_cache
        self._candidates_lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    def select_templates(self, request: Union[TemplateSelectionRequest, dict]) -> TemplateSelectionResult:
        req = self._validate(request)
        logger.info("[selector.select_templates] Grade %d %s, %d templates for %s",
                    req.grade, req.quarter, req.count, req.user_id)

        try:
            available = self._get_available_templates(req)
        except Exception as exc:
            logger.error("[selector.select_templates] Template fetch failed, using fallback: %s", exc)
            return self.fallback_selection(req)

        if not available:
            logger.warning("[selector.select_templates] No templates for criteria, using fallback")
            return self.fallback_selection(req)

        history = self.get_user_template_history(req.user_id)
        now_ts = self._now().timestamp()
        scored = sorted(
            available,
            key=lambda t: calculate_template_score(t, history, req.quarter, now_ts),
            reverse=True,
        )
        min_domains = req.min_domain_diversity or min(3, req.count)
        selected = apply_domain_diversity(scored, req.count, min_domains)

        self._update_usage_statistics(selected)

        metrics = calculate_selection_metrics(selected, available)
        session_id = f"session_{int(now_ts * 1000)}_{req.user_id[:8]}"
        result = TemplateSelectionResult(
            templates=selected,
            session_id=session_id,
            selection_metrics=metrics,
            source="smart-selection",
        )
        selection_event(result, route="selector.select_templates", user_id=req.user_id, grade=req.grade)
        return result

    def fallback_selection(self, request: Union[TemplateSelectionRequest, dict]) -> TemplateSelectionResult:
        """
        Random sample of active templates for the grade.

        Returns min(count, available) templates, so an empty grade gives an
        empty result. Raises only when the store itself fails.
        """
        req = self._validate(request)
        try:
            data = self.template_store.fetch_random_pool(req.grade, req.count * 3)
        except Exception as exc:
            logger.error("[selector.fallback_selection] Fallback fetch failed: %s", exc)
            raise TemplatesUnavailableError(f"no templates available for grade {req.grade}") from exc

        if not data:
            logger.warning("[selector.fallback_selection] No active templates for grade %d", req.grade)

        shuffled = list(data)
        self._rng.shuffle(shuffled)
        selected = shuffled[:req.count]

        result = TemplateSelectionResult(
            templates=selected,
            session_id=f"fallback_{int(self._now().timestamp() * 1000)}",
            selection_metrics=SelectionMetrics(
                total_available=len(data),
                domain_coverage=len({t.domain for t in selected}),
                avg_usage_count=0.0,
                diversity_score=0.0,
                anti_repetition_score=0.0,
            ),
            source="fallback",
        )
        selection_event(result, route="selector.fallback_selection", user_id=req.user_id, grade=req.grade)
        return result

    def select_for_user(self, user_id: str, grade: int, quarter: str, count: int = 5) -> TemplateSelectionResult:
        return self.select_templates({
            "grade": grade,
            "quarter": quarter,
            "user_id": user_id,
            "count": count,
            "min_domain_diversity": min(2, count),
        })

    def select_for_domain(self, user_id: str, grade: int, domain: str, count: int = 5) -> TemplateSelectionResult:
        return self.select_templates({
            "grade": grade,
            "quarter": "ANY",
            "user_id": user_id,
            "count": count,
            "domains": [domain],
        })

    def select_by_difficulty(self, user_id: str, grade: int, difficulty: str, count: int = 5) -> TemplateSelectionResult:
        return self.select_templates({
            "grade": grade,
            "quarter": "ANY",
            "user_id": user_id,
            "count": count,
            "difficulty": difficulty,
        })

    # -----------------------------------------------------------------------
    # History
    # -----------------------------------------------------------------------

    def _history_since(self) -> datetime:
        return self._now() - timedelta(days=self.history_days)

    def get_user_template_history(self, user_id: str) -> dict[str, UserTemplateHistory]:
        """
        Usage summary keyed by `template_{category}_{grade}`.

        Session rows carry no template id, so these keys never equal a real
        template id and the recency penalty does not fire for real templates.
        """
        try:
            sessions = self.history_store.fetch_learning_sessions(user_id, self._history_since())
        except Exception as exc:
            logger.warning("[selector.get_user_template_history] History unavailable: %s", exc)
            return {}

        history: dict[str, UserTemplateHistory] = {}
        for s in sessions:
            key = f"template_{s.category}_{s.grade}"
            used_at = s.session_date.timestamp()
            entry = history.get(key)
            if entry is not None:
                entry.usage_count += 1
                entry.last_used = max(entry.last_used, used_at)
                continue
            accuracy = (s.correct_answers / s.total_questions) if s.total_questions else None
            history[key] = UserTemplateHistory(
                user_id=user_id,
                template_id=key,
                last_used=used_at,
                usage_count=1,
                correct=s.correct_answers > s.total_questions / 2,
                time_spent=s.time_spent,
                accuracy=accuracy,
            )
        return history

    def get_selection_stats(self, user_id: str) -> dict[str, Any]:
        try:
            sessions = self.history_store.fetch_learning_sessions(user_id, self._history_since())
        except Exception as exc:
            logger.warning("[selector.get_selection_stats] History unavailable: %s", exc)
            return {"error": str(exc)}

        ratios = [s.correct_answers / s.total_questions for s in sessions if s.total_questions]
        return {
            "total_sessions": len(sessions),
            "avg_performance": sum(ratios) / (len(sessions) or 1),
            "domains": len({s.category for s in sessions}),
            "last_activity": sessions[0].session_date.isoformat() if sessions else None,
        }

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    @staticmethod
    def _validate(request: Union[TemplateSelectionRequest, dict]) -> TemplateSelectionRequest:
        if isinstance(request, TemplateSelectionRequest):
            return request
        try:
            return TemplateSelectionRequest.model_validate(request)
        except ValidationError as exc:
            raise InvalidSelectionRequest(str(exc)) from exc

    def _get_available_templates(self, req: TemplateSelectionRequest) -> list:
        query = TemplateQuery(
            grade=req.grade,
            quarter=None if req.quarter == "ANY" else req.quarter,
            min_quality=self.min_quality_score,
            domains=req.domains or None,
            difficulty=req.difficulty,
            question_types=req.question_types or None,
            limit=self.pool_limit,
        )
        return self._apply_feedback_filter(self._fetch_candidates(query), req.user_id)

    def _fetch_candidates(self, query: TemplateQuery) -> list:
        if self._candidates is None:
            return self.template_store.fetch_candidates(query)
        with self._candidates_lock:
            cached = self._candidates.get(query.cache_key)
        if cached is not None:
            return cached
        pool = self.template_store.fetch_candidates(query)
        with self._candidates_lock:
            self._candidates[query.cache_key] = pool
        return pool

    def _apply_feedback_filter(self, templates: list, user_id: str) -> list:
        if not templates:
            return templates
        try:
            flagged = self.history_store.fetch_negative_feedback(user_id)
        except Exception as exc:
            logger.warning("[selector.feedback_filter] Feedback unavailable, not filtering: %s", exc)
            return templates

        filtered = [t for t in templates if t.student_prompt not in flagged]
        if len(filtered) != len(templates):
            logger.info("[selector.feedback_filter] %d -> %d templates (user feedback)",
                        len(templates), len(filtered))
        return filtered

    def _update_usage_statistics(self, templates: list) -> None:
        played: set[str] = set()
        for t in templates:
            try:
                self.template_store.increment_plays(t.id)
                played.add(t.id)
            except Exception as exc:
                logger.warning("[selector.update_usage] Could not increment plays for %s: %s", t.id, exc)
        if played and self._candidates is not None:
            self._bump_cached_plays(played)

    def _bump_cached_plays(self, played: set[str]) -> None:
        # cached pools must score the same plays the store now holds
        with self._candidates_lock:
            for pool in self._candidates.values():
                for i, t in enumerate(pool):
                    if t.id in played:
                        pool[i] = t.model_copy(update={"plays": t.plays + 1})
