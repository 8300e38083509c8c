"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

KEYWORD_PROVIDERS = {"kakao", "serpapi"}


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing."""


@dataclass(frozen=True)
class Settings:
    kakao_rest_api_key: str
    serpapi_api_key: str = ""
    keyword_search_provider: str = "kakao"
    api_base_url: str = ""
    dataset_dir: str = "data/openapi"
    cache_path: str = "data/geocode_cache.sqlite"
    rules_path: Optional[str] = None
    worker_port: int = 9000
    geocode_max_workers: int = 6
    geocode_pacing_seconds: float = 0.09
    geocode_retry_delay_seconds: float = 0.14
    geocode_flush_delay_seconds: float = 0.12
    cache_flush_delay_seconds: float = 0.8
    stream_workers: int = 10
    stream_drain_timeout_seconds: float = 5.0

    def require_kakao_key(self) -> str:
        if not self.kakao_rest_api_key:
            raise ConfigError("KAKAO_REST_API_KEY must be set in the environment to geocode addresses.")
        return self.kakao_rest_api_key

    def require_serpapi_key(self) -> str:
        if not self.serpapi_api_key:
            raise ConfigError("SERPAPI_API_KEY must be set when KEYWORD_SEARCH_PROVIDER=serpapi.")
        return self.serpapi_api_key


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not numeric; using %s", name, raw, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    kakao_rest_api_key = os.getenv("KAKAO_REST_API_KEY", "")
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    keyword_search_provider = os.getenv("KEYWORD_SEARCH_PROVIDER", "kakao").strip().lower()
    api_base_url = os.getenv("CENTERMAP_API_URL", "").rstrip("/")
    dataset_dir = os.getenv("CENTERMAP_DATASET_DIR", "data/openapi")
    cache_path = os.getenv("CENTERMAP_CACHE_PATH", "data/geocode_cache.sqlite")
    rules_path = os.getenv("CENTERMAP_RULES_PATH") or None
    worker_port = int(os.getenv("WORKER_PORT", "9000"))
    geocode_max_workers = int(os.getenv("GEOCODE_MAX_WORKERS", "6"))
    stream_workers = int(os.getenv("STREAM_WORKERS", "10"))

    if keyword_search_provider not in KEYWORD_PROVIDERS:
        logger.warning(
            "KEYWORD_SEARCH_PROVIDER=%s is not supported; falling back to kakao.", keyword_search_provider
        )
        keyword_search_provider = "kakao"
    if not kakao_rest_api_key:
        logger.warning("KAKAO_REST_API_KEY is not configured; address geocoding will be skipped.")
    if keyword_search_provider == "serpapi" and not serpapi_api_key:
        logger.warning("SERPAPI_API_KEY is not configured; keyword place search will fail.")

    return Settings(
        kakao_rest_api_key=kakao_rest_api_key,
        serpapi_api_key=serpapi_api_key,
        keyword_search_provider=keyword_search_provider,
        api_base_url=api_base_url,
        dataset_dir=dataset_dir,
        cache_path=cache_path,
        rules_path=rules_path,
        worker_port=worker_port,
        geocode_max_workers=geocode_max_workers,
        geocode_pacing_seconds=_float_env("GEOCODE_PACING_SECONDS", 0.09),
        geocode_retry_delay_seconds=_float_env("GEOCODE_RETRY_DELAY_SECONDS", 0.14),
        geocode_flush_delay_seconds=_float_env("GEOCODE_FLUSH_DELAY_SECONDS", 0.12),
        cache_flush_delay_seconds=_float_env("CACHE_FLUSH_DELAY_SECONDS", 0.8),
        stream_workers=stream_workers,
        stream_drain_timeout_seconds=_float_env("STREAM_DRAIN_TIMEOUT_SECONDS", 5.0),
    )
