"""
Smart context rotation.

Sits on top of a ContextDiversityEngine and keeps a rolling per-user pool of
recent, preferred (seen 2-4 times) and banned (seen more than 5 times)
combinations. Every slot is filled by one of four strategies, drawn at random
by weight:

    sequential_rotation          0.3  dimensions not used in the last 5
    semantic_cluster_rotation    0.4  at least one value from an unused cluster
    adaptive_preference          0.2  similar to, but not the same as, preferred
    cognitive_load_balancing     0.1  counter the complexity of the last 3

The winning candidate of a strategy is the one with the best composite score
(40 diversity, 30 freshness, 20 quality, 10 progression).
"""
from __future__ import annotations

import logging
import random
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional

from cachetools import TTLCache

from app.models.context import ContextCombination, ScenarioFamily, SmartRotationMetrics, UserContextPool
from app.services.context_diversity import ClusterIndex, ContextDiversityEngine, format_context, hash_context

logger = logging.getLogger(__name__)

RECENT_POOL_SIZE = 20
PREFERRED_MIN, PREFERRED_MAX = 2, 4
PREFERRED_LIMIT = 10
BANNED_ABOVE = 5
RECALCULATE_EVERY = 10
MAX_DIMENSIONS = 5

DIVERSITY_WEIGHT = 40
FRESHNESS_WEIGHT = 30
QUALITY_WEIGHT = 20
PROGRESSION_WEIGHT = 10


# ---------------------------------------------------------------------------
# Context measures
# ---------------------------------------------------------------------------

def context_similarity(a: ContextCombination, b: ContextCombination) -> float:
    """Share of dimensions (union of both) holding the same value."""
    dims = set(a) | set(b)
    if not dims:
        return 0.0
    return sum(1 for d in dims if a.get(d) == b.get(d)) / len(dims)


def context_complexity(context: ContextCombination) -> float:
    """0..1; more dimensions and longer values read as more complex."""
    base = min(len(context) / MAX_DIMENSIONS, 1.0)
    values = [v for v in context.values() if v]
    semantic = sum(min(len(v) / 20, 1.0) for v in values) / len(values) if values else 0.0
    return base * 0.7 + semantic * 0.3


def average_complexity(contexts: list[ContextCombination]) -> float:
    if not contexts:
        return 0.5
    return sum(context_complexity(c) for c in contexts) / len(contexts)


def count_occurrences(contexts: list[ContextCombination]) -> tuple[Counter, dict[str, ContextCombination]]:
    counts: Counter = Counter()
    by_hash: dict[str, ContextCombination] = {}
    for ctx in contexts:
        h = hash_context(ctx)
        counts[h] += 1
        by_hash.setdefault(h, ctx)
    return counts, by_hash


def preferred_contexts(occurrences: dict[str, int], by_hash: dict[str, ContextCombination]) -> list[ContextCombination]:
    out = [by_hash[h] for h, n in occurrences.items() if PREFERRED_MIN <= n <= PREFERRED_MAX and h in by_hash]
    return out[:PREFERRED_LIMIT]


def banned_contexts(occurrences: dict[str, int], by_hash: dict[str, ContextCombination]) -> list[ContextCombination]:
    return [by_hash[h] for h, n in occurrences.items() if n > BANNED_ABOVE and h in by_hash]


# ---------------------------------------------------------------------------
# Strategies: (candidates, pool, clusters) -> filtered candidates
# ---------------------------------------------------------------------------

def sequential_rotation(candidates, pool: UserContextPool, clusters: ClusterIndex):
    recent_dims = {d for ctx in pool.recent_contexts[:5] for d in ctx}
    return [
        ctx for ctx in candidates
        if len(set(ctx) & recent_dims) < len(ctx) / 2
    ]


def semantic_cluster_rotation(candidates, pool: UserContextPool, clusters: ClusterIndex):
    recent_clusters = {
        clusters[(d, v)]
        for ctx in pool.recent_contexts[:8]
        for d, v in ctx.items()
        if (d, v) in clusters
    }
    return [
        ctx for ctx in candidates
        if any(
            (d, v) in clusters and clusters[(d, v)] not in recent_clusters
            for d, v in ctx.items()
        )
    ]


def adaptive_preference_rotation(candidates, pool: UserContextPool, clusters: ClusterIndex):
    if not pool.preferred_contexts:
        return list(candidates)
    scored = []
    for ctx in candidates:
        score = sum(context_similarity(ctx, p) for p in pool.preferred_contexts) / len(pool.preferred_contexts)
        if 0.3 < score < 0.8:
            scored.append((score, ctx))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [ctx for _, ctx in scored]


def cognitive_load_balancing(candidates, pool: UserContextPool, clusters: ClusterIndex):
    recent = average_complexity(pool.recent_contexts[:3])
    if recent > 0.7:
        return [c for c in candidates if context_complexity(c) < 0.4]
    if recent < 0.3:
        return [c for c in candidates if context_complexity(c) > 0.6]
    return [c for c in candidates if 0.4 <= context_complexity(c) <= 0.6]


@dataclass(frozen=True)
class RotationStrategy:
    name: str
    weight: float
    select: Callable


ROTATION_STRATEGIES: tuple[RotationStrategy, ...] = (
    RotationStrategy("sequential_rotation", 0.3, sequential_rotation),
    RotationStrategy("semantic_cluster_rotation", 0.4, semantic_cluster_rotation),
    RotationStrategy("adaptive_preference_rotation", 0.2, adaptive_preference_rotation),
    RotationStrategy("cognitive_load_balancing", 0.1, cognitive_load_balancing),
)


def select_rotation_strategy(rng: random.Random, strategies=ROTATION_STRATEGIES) -> RotationStrategy:
    total = sum(s.weight for s in strategies)
    roll = rng.random() * total
    cumulative = 0.0
    for s in strategies:
        cumulative += s.weight
        if roll <= cumulative:
            return s
    return strategies[0]


# ---------------------------------------------------------------------------
# Candidate scoring
# ---------------------------------------------------------------------------

def diversity_score(context: ContextCombination, recent: list[ContextCombination]) -> float:
    """Mean dissimilarity against the last 5 contexts; 1.0 with no history."""
    window = recent[:5]
    if not window:
        return 1.0
    return sum(1 - context_similarity(context, r) for r in window) / len(window)


def freshness_score(context: ContextCombination, recent: list[ContextCombination]) -> float:
    """1.0 if never seen; otherwise grows with the age of the last sighting (recent is newest first)."""
    h = hash_context(context)
    for i, r in enumerate(recent):
        if hash_context(r) == h:
            return i / len(recent)
    return 1.0


def quality_score(context: ContextCombination) -> float:
    # TODO: average the quality_score of the chosen variants once candidates carry variant ids
    return 0.5


def progression_score(context: ContextCombination, recent: list[ContextCombination]) -> float:
    ideal = min(average_complexity(recent[:3]) + 0.1, 1.0)
    return max(0.0, 1 - abs(context_complexity(context) - ideal) * 2)


def composite_context_score(context: ContextCombination, pool: UserContextPool) -> float:
    recent = pool.recent_contexts
    return (
        diversity_score(context, recent) * DIVERSITY_WEIGHT
        + freshness_score(context, recent) * FRESHNESS_WEIGHT
        + quality_score(context) * QUALITY_WEIGHT
        + progression_score(context, recent) * PROGRESSION_WEIGHT
    )


def select_optimal_context(candidates, used_hashes: set[str], pool: UserContextPool) -> Optional[ContextCombination]:
    """Best-scoring candidate not already chosen in this batch, or None."""
    unused = [c for c in candidates if hash_context(c) not in used_hashes]
    if not unused:
        return None
    return max(unused, key=lambda c: composite_context_score(c, pool))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class SmartContextRotationEngine:
    def __init__(
        self,
        diversity_engine: ContextDiversityEngine,
        pool_cache: Optional[TTLCache] = None,
        rng: Optional[random.Random] = None,
        history_days: int = 14,
        combinations_per_family: int = 20,
        cache_ttl_seconds: float = 300,
    ):
        self.diversity = diversity_engine
        self._pools = pool_cache if pool_cache is not None else TTLCache(maxsize=1024, ttl=cache_ttl_seconds)
        self._pools_lock = threading.Lock()
        self._rng = rng or random.Random()
        self.history_days = history_days
        self.combinations_per_family = combinations_per_family

    @property
    def pool_key(self) -> str:
        d = self.diversity
        return f"{d.user_id}_{d.category}_{d.grade}"

    # -----------------------------------------------------------------------
    # Pool
    # -----------------------------------------------------------------------

    def get_user_context_pool(self) -> UserContextPool:
        key = self.pool_key
        with self._pools_lock:
            pool = self._pools.get(key)
        if pool is not None:
            return pool

        history = self.diversity.get_user_context_history(self.history_days)
        contexts = [e.context_combination for e in history]
        occurrences, by_hash = count_occurrences(contexts)
        pool = UserContextPool(
            user_id=self.diversity.user_id,
            category=self.diversity.category,
            grade=self.diversity.grade,
            recent_contexts=contexts[:RECENT_POOL_SIZE],
            preferred_contexts=preferred_contexts(occurrences, by_hash),
            banned_contexts=banned_contexts(occurrences, by_hash),
            last_rotation_date=self.diversity.now(),
            occurrences=dict(occurrences),
            contexts_by_hash=by_hash,
        )
        with self._pools_lock:
            self._pools[key] = pool
        return pool

    def update_user_context_pool(self, pool: UserContextPool, context: ContextCombination) -> None:
        h = hash_context(context)
        pool.recent_contexts.insert(0, context)
        del pool.recent_contexts[RECENT_POOL_SIZE:]
        pool.last_rotation_date = self.diversity.now()
        pool.occurrences[h] = pool.occurrences.get(h, 0) + 1
        pool.contexts_by_hash.setdefault(h, context)
        pool.additions += 1
        if pool.additions % RECALCULATE_EVERY == 0:
            pool.preferred_contexts = preferred_contexts(pool.occurrences, pool.contexts_by_hash)
            pool.banned_contexts = banned_contexts(pool.occurrences, pool.contexts_by_hash)

    # -----------------------------------------------------------------------
    # Candidates
    # -----------------------------------------------------------------------

    def generate_context_combinations_for_family(self, family: ScenarioFamily) -> list[ContextCombination]:
        variants = {dim: self.diversity.get_context_variants(family.id, dim) for dim in family.context_slots}
        variants = {dim: vs for dim, vs in variants.items() if vs}
        if not variants:
            return []
        limit = min(self.combinations_per_family, 2 ** len(variants))
        return [
            {dim: self._rng.choice(vs).value for dim, vs in variants.items()}
            for _ in range(limit)
        ]

    def get_available_entries(
        self, pool: UserContextPool, families: list[ScenarioFamily]
    ) -> list[tuple[str, ContextCombination]]:
        """Unbanned candidates, each with the id of the family it was built from."""
        banned = {hash_context(b) for b in pool.banned_contexts}
        out: list[tuple[str, ContextCombination]] = []
        seen: set[str] = set()
        for family in families:
            for ctx in self.generate_context_combinations_for_family(family):
                h = hash_context(ctx)
                if h in banned or h in seen:
                    continue
                seen.add(h)
                out.append((family.id, ctx))
        return out

    def get_available_contexts(self, pool: UserContextPool, families: list[ScenarioFamily]) -> list[ContextCombination]:
        return [ctx for _, ctx in self.get_available_entries(pool, families)]

    # -----------------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------------

    def generate_smart_rotated_contexts(self, count: int = 5) -> list[ContextCombination]:
        return [ctx for _, ctx in self.generate_smart_rotated_entries(count)]

    def generate_smart_rotated_entries(self, count: int = 5) -> list[tuple[str, ContextCombination]]:
        """
        Rotated contexts paired with their scenario family id.

        Pass the id back to `ContextDiversityEngine.record_context_usage` so the
        variant usage counts and family coverage stay accurate.
        """
        pool = self.get_user_context_pool()
        families = self.diversity.get_scenario_families()
        used: set[str] = set()
        out: list[tuple[str, ContextCombination]] = []

        if families:
            entries = self.get_available_entries(pool, families)
            family_of = {hash_context(ctx): fid for fid, ctx in entries}
            available = [ctx for _, ctx in entries]
            clusters = self.diversity.cluster_index(families)
            for _ in range(count):
                picked = select_rotation_strategy(self._rng)
                order = [picked] + sorted(
                    (s for s in ROTATION_STRATEGIES if s is not picked),
                    key=lambda s: s.weight, reverse=True,
                )
                best = None
                for strategy in order:
                    best = select_optimal_context(strategy.select(available, pool, clusters), used, pool)
                    if best is not None:
                        logger.debug("[context_rotation] slot filled by %s", strategy.name)
                        break
                if best is None:
                    break
                h = hash_context(best)
                out.append((family_of[h], best))
                used.add(h)
                self.update_user_context_pool(pool, best)
        else:
            logger.warning("[context_rotation] No scenario families, using plain diverse generation")

        if len(out) < count:
            banned = {hash_context(b) for b in pool.banned_contexts}
            for family_id, ctx in self.diversity.generate_diverse_entries(count - len(out)):
                h = hash_context(ctx)
                if h in banned or h in used:
                    continue
                used.add(h)
                out.append((family_id, ctx))

        return out

    # -----------------------------------------------------------------------
    # Metrics / prompt
    # -----------------------------------------------------------------------

    def calculate_smart_rotation_metrics(self) -> SmartRotationMetrics:
        recent = self.get_user_context_pool().recent_contexts
        hashes = [hash_context(c) for c in recent]

        utilization = len(set(hashes)) / len(hashes) if hashes else 0.0

        if len(hashes) < 5:
            effectiveness = 0.5
        else:
            windows = [hashes[i:i + 5] for i in range(len(hashes) - 4)]
            effectiveness = sum(len(set(w)) / 5 for w in windows) / len(windows)

        if recent:
            dims = {d for c in recent for d in c}
            values = {v for c in recent for v in c.values() if v}
            variety = (min(len(dims) / MAX_DIMENSIONS, 1.0) + min(len(values) / (len(recent) * 2), 1.0)) / 2
            complexities = [context_complexity(c) for c in recent]
            mean = sum(complexities) / len(complexities)
            variance = sum((c - mean) ** 2 for c in complexities) / len(complexities)
            balance = max(0.0, 1 - variance * 4)
        else:
            variety = 0.0
            balance = 0.5

        return SmartRotationMetrics(
            context_utilization_rate=utilization,
            rotation_effectiveness=effectiveness,
            # no engagement data is collected yet
            user_engagement_improvement=0.75,
            template_variety_score=variety,
            cognitive_load_balance=balance,
        )

    @staticmethod
    def get_smart_rotation_prompt_instructions(
        selected_contexts: list[ContextCombination],
        metrics: SmartRotationMetrics,
    ) -> str:
        contexts = "\n".join(f"{i}. {format_context(c)}" for i, c in enumerate(selected_contexts, 1))
        return "\n".join([
            "SMART CONTEXT ROTATION:",
            "",
            "ROTATION METRICS:",
            f"- Kontext-Nutzungsrate: {metrics.context_utilization_rate * 100:.1f}%",
            f"- Rotation-Effektivität: {metrics.rotation_effectiveness * 100:.1f}%",
            f"- Template-Vielfalt: {metrics.template_variety_score * 100:.1f}%",
            f"- Kognitive Balance: {metrics.cognitive_load_balance * 100:.1f}%",
            "",
            "KONTEXTE FÜR DIESE FRAGEN:",
            contexts or "(keine)",
            "",
            "REGELN:",
            "- Nutze die oben genannten Kontexte als Basis und entwickle sie weiter.",
            "- Kombiniere Kontexte zu zusammenhängenden Szenarien.",
            "- Wechsle zwischen einfachen und komplexeren Kontexten.",
        ])
