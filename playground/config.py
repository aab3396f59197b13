import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    provider_name: str = "stub"
    openai_api_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    openrouter_model: Optional[str] = None
    default_model: str = "gpt-4o-mini"
    classifier_model: str = "gpt-4o-mini"

    auth_token: Optional[str] = None
    clerk_jwks_url: Optional[str] = None
    clerk_jwt_key: Optional[str] = None
    clerk_issuer: Optional[str] = None
    clerk_audience: Optional[str] = None
    clerk_authorized_parties: List[str] = []

    memory_store: str = "memory"
    memory_max_items: int = 200
    memory_recent_limit: int = 50
    memory_ttl_seconds: Optional[int] = None
    redis_url: str = "redis://localhost:6379/0"
    db_path: str = "./data/playground.db"

    notes_dir: str = "./notes"
    cache_dir: Optional[str] = "./cache"
    cache_flush_delay: float = 0.2

    weather_api_key: Optional[str] = None
    tool_timeout_seconds: float = 10.0
    docs_top_k: int = 3
    doc_cap: int = 10

    tokenizer: str = "approx"
    context_safety_fraction: float = 0.8
    summarize_overflow: bool = True
    summary_strategy: str = "model"
    use_intent_classifier: bool = True
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 0.4

    rate_limit_per_minute: int = 60
    stream_rate_limit: int = 30
    stream_rate_window_seconds: int = 300
    cors_origins: str = "*"

    service_name: str = "llm-playground"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    NOTE: environment values are *not* cached here; `get_settings` below
    re-creates Settings each time from the current environment. This helper
    only stores defaults.
    """

    return Settings()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """

    base = _base_settings()
    clerk_authorized_parties_raw = os.getenv("CLERK_AUTHORIZED_PARTIES") or ""
    clerk_authorized_parties = [
        part.strip() for part in clerk_authorized_parties_raw.split(",") if part.strip()
    ]
    cache_dir = os.getenv("CACHE_DIR")
    if cache_dir is None:
        cache_dir = base.cache_dir
    elif not cache_dir.strip() or cache_dir.strip().lower() == "none":
        # CACHE_DIR=none keeps caches in memory only.
        cache_dir = None

    return Settings(
        provider_name=(os.getenv("PROVIDER") or base.provider_name).lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        openrouter_model=os.getenv("OPENROUTER_MODEL") or None,
        default_model=os.getenv("DEFAULT_MODEL") or base.default_model,
        classifier_model=os.getenv("CLASSIFIER_MODEL") or base.classifier_model,
        auth_token=os.getenv("AUTH_TOKEN") or None,
        clerk_jwks_url=os.getenv("CLERK_JWKS_URL") or None,
        clerk_jwt_key=os.getenv("CLERK_JWT_KEY") or None,
        clerk_issuer=os.getenv("CLERK_ISSUER") or None,
        clerk_audience=os.getenv("CLERK_AUDIENCE") or None,
        clerk_authorized_parties=clerk_authorized_parties,
        memory_store=(os.getenv("MEMORY_STORE") or base.memory_store).lower(),
        memory_max_items=_env_int("MEMORY_MAX_ITEMS", base.memory_max_items),
        memory_recent_limit=_env_int("MEMORY_RECENT_LIMIT", base.memory_recent_limit),
        memory_ttl_seconds=_env_int("MEMORY_TTL_SECONDS", base.memory_ttl_seconds),
        redis_url=os.getenv("REDIS_URL") or base.redis_url,
        db_path=os.getenv("DB_PATH") or base.db_path,
        notes_dir=os.getenv("NOTES_DIR") or base.notes_dir,
        cache_dir=cache_dir,
        cache_flush_delay=_env_float("CACHE_FLUSH_DELAY", base.cache_flush_delay),
        weather_api_key=os.getenv("WEATHER_API_KEY") or None,
        tool_timeout_seconds=_env_float("TOOL_TIMEOUT_SECONDS", base.tool_timeout_seconds),
        docs_top_k=_env_int("DOCS_TOP_K", base.docs_top_k),
        doc_cap=_env_int("DOC_CAP", base.doc_cap),
        tokenizer=os.getenv("TOKENIZER") or base.tokenizer,
        context_safety_fraction=_env_float("CONTEXT_SAFETY_FRACTION", base.context_safety_fraction),
        summarize_overflow=_env_bool("SUMMARIZE_OVERFLOW", base.summarize_overflow),
        summary_strategy=(os.getenv("SUMMARY_STRATEGY") or base.summary_strategy).lower(),
        use_intent_classifier=_env_bool("USE_INTENT_CLASSIFIER", base.use_intent_classifier),
        llm_max_retries=_env_int("LLM_MAX_RETRIES", base.llm_max_retries),
        llm_retry_base_delay=_env_float("LLM_RETRY_BASE_DELAY", base.llm_retry_base_delay),
        rate_limit_per_minute=_env_int("RATE_LIMIT_PER_MINUTE", base.rate_limit_per_minute),
        stream_rate_limit=_env_int("STREAM_RATE_LIMIT", base.stream_rate_limit),
        stream_rate_window_seconds=_env_int("STREAM_RATE_WINDOW_SECONDS", base.stream_rate_window_seconds),
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        service_name=base.service_name,
        http_port=base.http_port,
    )
