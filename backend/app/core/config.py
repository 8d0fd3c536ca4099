from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_name: str = "Quiz Template Engine"
    debug: bool = False
    log_level: str = "INFO"

    # Supabase
    supabase_url: str
    supabase_service_key: str

    # OpenAI (kept for fallback)
    openai_api_key: str = ""

    # Gemini
    gemini_api_key: str = ""
    llm_provider: str = "gemini"

    # CORS
    frontend_url: str = "http://localhost:5173"

    # Template selection
    min_quality_score: float = 0.8
    candidate_pool_limit: int = 500
    selection_history_days: int = 30

    # Templates needed per (grade, quarter, domain, difficulty, type) cell
    coverage_target_per_combination: int = 8

    # Context engines
    context_history_days: int = 7
    rotation_history_days: int = 14
    cache_ttl_seconds: int = 300

    # Batch generation
    batch_size: int = 10
    batch_delay_seconds: float = 1.0
    batch_max_concurrent_requests: int = 3

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
