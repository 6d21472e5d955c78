from __future__ import annotations

from pydantic import AliasChoices, ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Leadfinder"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Inference provider (OpenAI-compatible chat completions; Groq by default)
    llm_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LLM_API_KEY", "GROQ_API_KEY", "OPENAI_API_KEY"),
    )
    llm_base_url: str = "https://api.groq.com/openai/v1"
    intent_model: str = "openai/gpt-oss-20b"
    pattern_model: str = "moonshotai/kimi-k2-instruct"
    contact_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    llm_temperature: float = 0.1
    llm_timeout_seconds: float = 20.0
    llm_retry_attempts: int = 3

    # Search aggregator
    searxng_url: str = Field(
        default="http://localhost:8888",
        validation_alias=AliasChoices("SEARXNG_URL", "SEARXNG_INSTANCE_URL"),
    )
    search_timeout_seconds: float = 10.0

    # Scraping session + listing source
    flaresolverr_url: str = "http://localhost:8191"
    flaresolverr_max_timeout_ms: int = 60000
    flaresolverr_timeout_seconds: float = 70.0
    listing_base_url: str = "https://www.yellowpages.com/search"

    # Geolocation fallback
    geolocation_url: str = "https://ipapi.co"
    geolocation_timeout_seconds: float = 10.0
    default_location: str = "United States"

    # Collector
    max_pages: int = 50
    max_consecutive_empty_pages: int = 3
    page_delay_seconds: float = 2.0
    page_delay_jitter_seconds: float = 2.0

    # Pattern inference
    pattern_default_confidence: float = 0.8
    pattern_fallback_confidence: float = 0.5
    evidence_delay_seconds: float = 1.0

    # Contact resolution
    contact_confidence_floor: float = 0.3
    contact_max_results: int = 15
    emails_per_contact: int = 4
    company_delay_seconds: float = 2.0
    contact_refinement_enabled: bool = False

    # Discovery requests
    max_target_companies: int = 10
    default_target_companies: int = 5

    # Storage
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    store_timeout_seconds: float = 10.0

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Sentry
    sentry_dsn: str | None = None

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "discovery"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def inference_configured(self) -> bool:
        """True when an inference provider credential is available."""
        return bool(self.llm_api_key and self.llm_api_key.strip())

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    model_config = ConfigDict(env_file=".env", case_sensitive=False, populate_by_name=True, extra="ignore")


settings = Settings()
