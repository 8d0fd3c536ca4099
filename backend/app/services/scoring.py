"""
Template selection score.

The score is a sum of independent terms on top of a 0.5 base, clamped to
[0, 1]. Each term is its own function so it can be tested and tuned alone.

    base                 0.5
    anti-repetition    + 0.7  * max(0, 1 - plays/100)
    recency            - 0.3  * max(0, 1 - days_since/30)   (user touched it)
                       - 0.5  flat if days_since < 7
    quality            + 0.2  * quality_score
    success rate       + 0.15 * correct/plays               (0.5 if unplayed)
    rating             + 0.1  * avg_rating/5                (0.5 if unrated)
    quarter match      + 0.1  if template quarter == requested quarter
"""
from __future__ import annotations

from typing import Optional

from app.models.selection import UserTemplateHistory
from app.models.template import TemplateBase

BASE_SCORE = 0.5
USAGE_WEIGHT = 0.7
RECENCY_WEIGHT = 0.3
RECENCY_WINDOW_DAYS = 30.0
RECENT_USE_DAYS = 7.0
RECENT_USE_PENALTY = 0.5
QUALITY_WEIGHT = 0.2
SUCCESS_WEIGHT = 0.15
RATING_WEIGHT = 0.1
QUARTER_MATCH_BONUS = 0.1

_DAY_SECONDS = 24 * 60 * 60


def anti_repetition_bonus(plays: int) -> float:
    """Non-increasing in `plays`; zero from 100 plays on."""
    return max(0.0, 1.0 - plays / 100) * USAGE_WEIGHT


def recency_penalty(history: Optional[UserTemplateHistory], now: float) -> float:
    """Amount to subtract for a template the user saw recently. `now` is epoch seconds."""
    if history is None:
        return 0.0
    days_since = (now - history.last_used) / _DAY_SECONDS
    penalty = max(0.0, 1.0 - days_since / RECENCY_WINDOW_DAYS) * RECENCY_WEIGHT
    if days_since < RECENT_USE_DAYS:
        penalty += RECENT_USE_PENALTY
    return penalty


def quality_bonus(quality_score: Optional[float]) -> float:
    return (quality_score or 0.5) * QUALITY_WEIGHT


def success_rate_bonus(success_rate: Optional[float]) -> float:
    return (0.5 if success_rate is None else success_rate) * SUCCESS_WEIGHT


def rating_bonus(average_rating: Optional[float]) -> float:
    normalised = 0.5 if average_rating is None else average_rating / 5
    return normalised * RATING_WEIGHT


def quarter_match_bonus(template_quarter: Optional[str], requested_quarter: str) -> float:
    return QUARTER_MATCH_BONUS if template_quarter == requested_quarter else 0.0


def calculate_template_score(
    template: TemplateBase,
    history: dict[str, UserTemplateHistory],
    requested_quarter: str,
    now: float,
) -> float:
    """Deterministic for fixed inputs; always within [0, 1]."""
    score = BASE_SCORE
    score += anti_repetition_bonus(template.plays)
    score -= recency_penalty(history.get(template.id), now)
    score += quality_bonus(template.quality_score)
    score += success_rate_bonus(template.success_rate)
    score += rating_bonus(template.average_rating)
    score += quarter_match_bonus(template.quarter_app, requested_quarter)
    return max(0.0, min(1.0, score))
