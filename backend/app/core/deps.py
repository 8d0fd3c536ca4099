import logging
import os
import random
from types import SimpleNamespace
from functools import lru_cache

from cachetools import TTLCache
from supabase import create_client, Client
from openai import OpenAI

from app.core.config import Settings, get_settings
from app.services.batch_generator import BatchTemplateGenerator
from app.services.curriculum import CurriculumManager, load_curriculum
from app.services.history_store import SupabaseUserHistoryStore, UserHistoryStore
from app.services.scenario_store import ScenarioStore, SupabaseScenarioStore
from app.services.template_selector import SmartTemplateSelector
from app.services.template_store import SupabaseTemplateStore, TemplateStore

_prompt_logger = logging.getLogger("quizengine.gemini_prompts")


@lru_cache
def get_supabase_client() -> Client:
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_key)


# ── LLM clients ──────────────────────────────────────────────────────────────
# TemplateGenerationService only needs client.chat.completions.create(...)
# returning .choices[0].message.content; GeminiChatClient offers exactly that.

class GeminiChatClient:
    MODEL = "gemini-2.5-flash"

    def __init__(self, api_key: str, model: str = MODEL):
        self._api_key = api_key
        self._model = model
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, model=None, messages=None, temperature=0.7, max_tokens=None, **kwargs):
        from google import genai
        from google.genai import types

        messages = messages or []
        system_instruction = "\n\n".join(m["content"] for m in messages if m.get("role") == "system") or None
        user_prompt = "\n\n".join(m["content"] for m in messages if m.get("role") != "system")
        max_output = max_tokens or 2048

        if os.environ.get("DEBUG_LLM_PROMPTS", "").lower() in ("1", "true"):
            _prompt_logger.warning(
                "\n── SYSTEM ──\n%s\n── USER ──\n%s\n── temp=%s max_tokens=%s",
                system_instruction or "(none)", user_prompt, temperature, max_output,
            )

        response = genai.Client(api_key=self._api_key).models.generate_content(
            model=self._model,
            contents=user_prompt,
            config=types.GenerateContentConfig(
                system_instruction=system_instruction,
                temperature=temperature,
                max_output_tokens=max_output,
                response_mime_type="application/json",
                # no thinking preamble before the JSON
                thinking_config=types.ThinkingConfig(thinking_budget=0),
            ),
        )
        message = SimpleNamespace(content=response.text or "")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def get_llm_client(settings: Settings = None):
    """OpenAI client or the Gemini wrapper, depending on settings.llm_provider."""
    settings = settings or get_settings()
    if settings.llm_provider == "openai":
        return OpenAI(api_key=settings.openai_api_key)
    return GeminiChatClient(api_key=settings.gemini_api_key)


# ── Stores and services ──────────────────────────────────────────────────────

def get_template_store() -> TemplateStore:
    return SupabaseTemplateStore(get_supabase_client())


def get_history_store() -> UserHistoryStore:
    return SupabaseUserHistoryStore(get_supabase_client())


def get_scenario_store() -> ScenarioStore:
    return SupabaseScenarioStore(get_supabase_client())


@lru_cache
def get_context_cache() -> TTLCache:
    """Process-wide cache for scenario families and variants."""
    return TTLCache(maxsize=2048, ttl=get_settings().cache_ttl_seconds)


@lru_cache
def get_context_pool_cache() -> TTLCache:
    """Process-wide cache of per-user rotation pools."""
    return TTLCache(maxsize=4096, ttl=get_settings().cache_ttl_seconds)


@lru_cache
def get_candidate_cache() -> TTLCache:
    """Candidate template pools per selection query."""
    return TTLCache(maxsize=256, ttl=get_settings().cache_ttl_seconds)


def get_curriculum_manager() -> CurriculumManager:
    settings = get_settings()
    return CurriculumManager(
        load_curriculum(),
        target_per_combination=settings.coverage_target_per_combination,
        template_store=get_template_store(),
    )


def get_template_selector() -> SmartTemplateSelector:
    settings = get_settings()
    return SmartTemplateSelector(
        get_template_store(),
        get_history_store(),
        min_quality_score=settings.min_quality_score,
        pool_limit=settings.candidate_pool_limit,
        history_days=settings.selection_history_days,
        rng=random.Random(),
        candidate_cache=get_candidate_cache(),
    )


@lru_cache
def get_batch_generator() -> BatchTemplateGenerator:
    """One generator per process so the single-run guard holds across requests."""
    from app.services.ai import TemplateGenerationService

    settings = get_settings()
    return BatchTemplateGenerator(
        TemplateGenerationService(get_llm_client(settings)),
        get_template_store(),
        get_curriculum_manager(),
        batch_size=settings.batch_size,
        delay_seconds=settings.batch_delay_seconds,
        max_concurrent_requests=settings.batch_max_concurrent_requests,
    )
