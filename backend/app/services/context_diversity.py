"""
Contextual diversity engine.

Builds context combinations (location, character, activity, ...) for story
questions so that a user does not see the same scenery over and over.

Families come from the scenario store, filtered by category and grade range.
For every slot of a family one variant is chosen: a variant from a semantic
cluster not yet used in the current batch wins (quality desc, usage asc);
once every cluster has been used the least-used, best-rated variant is taken.
Combinations already produced in the batch or seen by the user in the last
`history_days` days are dropped, not replaced.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from itertools import combinations
from typing import Callable, Optional

from cachetools import TTLCache

from app.models.context import (
    ContextCombination,
    ContextHistoryEntry,
    ContextVariant,
    DiversityMetrics,
    ScenarioFamily,
)
from app.services.history_store import UserHistoryStore
from app.services.scenario_store import ScenarioStore

logger = logging.getLogger(__name__)

SAME_CLUSTER_DISTANCE = 0.2
OTHER_CLUSTER_DISTANCE = 1.0
SAME_VALUE_DISTANCE = 0.1
OTHER_VALUE_DISTANCE = 0.8

# Newest contexts included in the pairwise distance average
SDS_WINDOW = 50

# (dimension, value) -> semantic cluster name
ClusterIndex = dict[tuple[str, str], str]


def hash_context(context: ContextCombination) -> str:
    """Stable digest of a combination; independent of key order."""
    canonical = json.dumps(context, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def select_diverse_variant(
    variants: list[ContextVariant],
    used_clusters: set[str],
    batch_usage: Optional[Counter] = None,
) -> Optional[ContextVariant]:
    """
    Pick one variant for a slot.

    `batch_usage` counts picks made earlier in the same batch and is added to
    the stored usage_count when ranking.
    """
    if not variants:
        return None
    batch_usage = batch_usage or Counter()

    def usage(v: ContextVariant) -> int:
        return v.usage_count + batch_usage[v.id]

    fresh = [v for v in variants if v.semantic_cluster and v.semantic_cluster not in used_clusters]
    if fresh:
        return min(fresh, key=lambda v: (-v.quality_score, usage(v)))
    return min(variants, key=lambda v: (usage(v), -v.quality_score))


def semantic_distance(a: ContextCombination, b: ContextCombination, clusters: ClusterIndex) -> float:
    """Mean per-dimension distance between two combinations, in [0, 1]."""
    dims = set(a) | set(b)
    if not dims:
        return 0.0
    total = 0.0
    for dim in dims:
        va, vb = a.get(dim), b.get(dim)
        ca = clusters.get((dim, va)) if va is not None else None
        cb = clusters.get((dim, vb)) if vb is not None else None
        if ca and cb:
            total += SAME_CLUSTER_DISTANCE if ca == cb else OTHER_CLUSTER_DISTANCE
        else:
            total += SAME_VALUE_DISTANCE if va == vb else OTHER_VALUE_DISTANCE
    return total / len(dims)


def format_context(context: ContextCombination) -> str:
    return ", ".join(f"{k}:{v}" for k, v in context.items())


class ContextDiversityEngine:
    def __init__(
        self,
        user_id: str,
        category: str,
        grade: int,
        scenario_store: ScenarioStore,
        history_store: UserHistoryStore,
        history_days: int = 7,
        cache_ttl_seconds: float = 300,
        cache: Optional[TTLCache] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.user_id = user_id
        self.category = category
        self.grade = grade
        self.scenario_store = scenario_store
        self.history_store = history_store
        self.history_days = history_days
        self._cache = cache if cache is not None else TTLCache(maxsize=512, ttl=cache_ttl_seconds)
        self._cache_lock = threading.Lock()
        self.now = now or (lambda: datetime.now(timezone.utc))

    # -----------------------------------------------------------------------
    # Reads (cached, fail-open)
    # -----------------------------------------------------------------------

    def _cached(self, key, loader, what: str) -> list:
        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]
        try:
            value = loader()
        except Exception as exc:
            logger.error("[context_diversity] Failed to fetch %s: %s", what, exc)
            return []
        with self._cache_lock:
            self._cache[key] = value
        return value

    def get_scenario_families(self) -> list[ScenarioFamily]:
        return self._cached(
            ("families", self.category, self.grade),
            lambda: self.scenario_store.fetch_scenario_families(self.category, self.grade),
            "scenario families",
        )

    def get_context_variants(self, scenario_family_id: str, dimension_type: str) -> list[ContextVariant]:
        return self._cached(
            ("variants", scenario_family_id, dimension_type),
            lambda: self.scenario_store.fetch_context_variants(scenario_family_id, dimension_type),
            f"variants for {scenario_family_id}/{dimension_type}",
        )

    def get_user_context_history(self, days: Optional[int] = None) -> list[ContextHistoryEntry]:
        since = self.now() - timedelta(days=days if days is not None else self.history_days)
        try:
            return self.history_store.fetch_context_history(self.user_id, self.category, self.grade, since)
        except Exception as exc:
            logger.error("[context_diversity] Failed to fetch context history: %s", exc)
            return []

    def cluster_index(self, families: Optional[list[ScenarioFamily]] = None) -> ClusterIndex:
        index: ClusterIndex = {}
        for family in families if families is not None else self.get_scenario_families():
            for dim in family.context_slots:
                for v in self.get_context_variants(family.id, dim):
                    if v.semantic_cluster:
                        index[(dim, v.value)] = v.semantic_cluster
        return index

    # -----------------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------------

    def generate_diverse_entries(self, count: int = 5) -> list[tuple[str, ContextCombination]]:
        """Like generate_diverse_contexts, but each combination comes with its family id."""
        families = self.get_scenario_families()
        if not families:
            logger.warning("[context_diversity] No scenario families for %s grade %d", self.category, self.grade)
            return []

        seen = {hash_context(e.context_combination) for e in self.get_user_context_history()}
        used_clusters: set[str] = set()
        batch_usage: Counter = Counter()
        out: list[tuple[str, ContextCombination]] = []

        for i in range(count):
            family = families[i % len(families)]
            context: ContextCombination = {}
            for dim in family.context_slots:
                variant = select_diverse_variant(self.get_context_variants(family.id, dim), used_clusters, batch_usage)
                if variant is None:
                    continue
                context[dim] = variant.value
                batch_usage[variant.id] += 1
                if variant.semantic_cluster:
                    used_clusters.add(variant.semantic_cluster)

            if not context:
                continue
            h = hash_context(context)
            if h in seen:
                continue
            seen.add(h)
            out.append((family.id, context))

        return out

    def generate_diverse_contexts(self, count: int = 5) -> list[ContextCombination]:
        return [ctx for _, ctx in self.generate_diverse_entries(count)]

    def record_context_usage(
        self,
        context: ContextCombination,
        scenario_family_id: Optional[str] = None,
        question_id: Optional[str] = None,
    ) -> bool:
        """
        Persist one shown combination and bump its variants' usage. Never raises.

        Without `scenario_family_id` the first family that has a variant for
        every (dimension, value) of the context is used. The return value
        reports the history write; a failed usage bump is only logged.
        """
        if scenario_family_id is None:
            scenario_family_id = self.find_scenario_family(context)
        entry = ContextHistoryEntry(
            user_id=self.user_id,
            category=self.category,
            grade=self.grade,
            context_combination=context,
            context_hash=hash_context(context),
            scenario_family_id=scenario_family_id,
            question_id=question_id,
            session_date=self.now(),
        )
        try:
            self.history_store.insert_context_history(entry)
        except Exception as exc:
            logger.error("[context_diversity.record_context_usage] %s", exc)
            return False

        if scenario_family_id:
            for dim, value in context.items():
                try:
                    self.scenario_store.increment_variant_usage(scenario_family_id, dim, value)
                except Exception as exc:
                    logger.warning("[context_diversity.record_context_usage] Usage bump failed for %s=%s: %s",
                                   dim, value, exc)
        return True

    def find_scenario_family(self, context: ContextCombination) -> Optional[str]:
        """Id of the first family offering every value of `context`, or None."""
        if not context:
            return None
        for family in self.get_scenario_families():
            if all(
                any(v.value == value for v in self.get_context_variants(family.id, dim))
                for dim, value in context.items()
            ):
                return family.id
        return None

    # -----------------------------------------------------------------------
    # Metrics
    # -----------------------------------------------------------------------

    def calculate_diversity_metrics(self, days: int = 7) -> DiversityMetrics:
        history = self.get_user_context_history(days)
        families = self.get_scenario_families()

        if not history:
            return DiversityMetrics(
                context_repetition_rate=0.0,
                semantic_distance_score=1.0,
                scenario_family_coverage=0.0,
                user_engagement_score=0.0,
            )

        contexts = [e.context_combination for e in history]
        unique = {hash_context(c) for c in contexts}
        crr = 1 - len(unique) / len(contexts)

        window = contexts[:SDS_WINDOW]
        if len(window) > 1:
            clusters = self.cluster_index(families)
            pairs = list(combinations(window, 2))
            sds = sum(semantic_distance(a, b, clusters) for a, b in pairs) / len(pairs)
        else:
            sds = 1.0

        family_ids = {f.id for f in families}
        used_families = {e.scenario_family_id for e in history if e.scenario_family_id} & family_ids
        sfc = len(used_families) / len(family_ids) if family_ids else 0.0

        ues = max(0.0, 1 - crr) * sds * (sfc + 0.1)
        return DiversityMetrics(
            context_repetition_rate=crr,
            semantic_distance_score=sds,
            scenario_family_coverage=sfc,
            user_engagement_score=ues,
        )

    # -----------------------------------------------------------------------
    # Prompt helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def fill_template(template: str, context: ContextCombination) -> str:
        for key, value in context.items():
            if value:
                template = template.replace("{" + key + "}", value)
        return template

    @staticmethod
    def get_enhanced_prompt_instructions(excluded_contexts: Optional[list[ContextCombination]] = None) -> str:
        lines = [
            "KONTEXTUELLE VIELFALT - WICHTIGE REGELN:",
            "",
            "ORTE: Nutze verschiedene Orte, nicht nur \"Bäckerei\" oder \"Korb\".",
            "  Geschäfte: Bäckerei, Markt, Laden, Restaurant, Apotheke",
            "  Bildung: Schule, Bibliothek, Museum, Klassenzimmer",
            "  Draußen: Park, Strand, Wald, Spielplatz, Garten",
            "  Zuhause: Küche, Wohnzimmer, Kinderzimmer",
            "PERSONEN: Familie, Berufe (Lehrer, Bäcker, Verkäufer, Koch, Gärtner), Kinder",
            "TÄTIGKEITEN: kaufen, sammeln, sortieren, bauen, teilen, lernen, spielen, kochen",
            "GEGENSTÄNDE: nicht nur Äpfel! Auch Brot, Kekse, Gemüse, Bälle, Bücher, Stifte",
        ]
        if excluded_contexts:
            lines += ["", "VERMEIDE DIESE KONTEXTE:"]
            lines += [f"{i}. {format_context(ctx)}" for i, ctx in enumerate(excluded_contexts, 1)]
        lines += ["", "Kombiniere ungewöhnliche aber sinnvolle Kontexte für maximale Vielfalt."]
        return "\n".join(lines)
