"""Scenario families and their context variants."""

import logging
import threading
from typing import Optional

from app.models.context import ContextVariant, ScenarioFamily

logger = logging.getLogger(__name__)


class ScenarioStore:
    def fetch_scenario_families(self, category: str, grade: int) -> list[ScenarioFamily]:
        """Families of `category` whose grade range contains `grade`."""
        raise NotImplementedError

    def fetch_context_variants(self, scenario_family_id: str, dimension_type: str) -> list[ContextVariant]:
        raise NotImplementedError

    def increment_variant_usage(self, scenario_family_id: str, dimension_type: str, value: str) -> None:
        raise NotImplementedError


class InMemoryScenarioStore(ScenarioStore):
    def __init__(self, families: Optional[list[ScenarioFamily]] = None,
                 variants: Optional[list[ContextVariant]] = None):
        self._lock = threading.Lock()
        self.families = list(families or [])
        self.variants = list(variants or [])

    def fetch_scenario_families(self, category, grade):
        with self._lock:
            return [
                f for f in self.families
                if f.category == category and f.grade_min <= grade <= f.grade_max
            ]

    def fetch_context_variants(self, scenario_family_id, dimension_type):
        with self._lock:
            return [
                v for v in self.variants
                if v.scenario_family_id == scenario_family_id and v.dimension_type == dimension_type
            ]

    def increment_variant_usage(self, scenario_family_id, dimension_type, value):
        with self._lock:
            for i, v in enumerate(self.variants):
                if (v.scenario_family_id, v.dimension_type, v.value) == (scenario_family_id, dimension_type, value):
                    self.variants[i] = v.model_copy(update={"usage_count": v.usage_count + 1})


class SupabaseScenarioStore(ScenarioStore):
    def __init__(self, supabase_client):
        self.sb = supabase_client

    def fetch_scenario_families(self, category, grade):
        r = (
            self.sb.table("scenario_families")
            .select("*")
            .eq("category", category)
            .lte("grade_min", grade)
            .gte("grade_max", grade)
            .execute()
        )
        return [ScenarioFamily.model_validate(row) for row in getattr(r, "data", None) or []]

    def fetch_context_variants(self, scenario_family_id, dimension_type):
        r = (
            self.sb.table("context_variants")
            .select("*")
            .eq("scenario_family_id", scenario_family_id)
            .eq("dimension_type", dimension_type)
            .execute()
        )
        return [ContextVariant.model_validate(row) for row in getattr(r, "data", None) or []]

    def increment_variant_usage(self, scenario_family_id, dimension_type, value):
        self.sb.rpc("increment_context_variant_usage", {
            "p_scenario_family_id": scenario_family_id,
            "p_dimension_type": dimension_type,
            "p_value": value,
        }).execute()
