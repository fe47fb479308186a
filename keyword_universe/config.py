"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import ClassVar, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = "development"

    # LLM Configuration
    default_llm_model: str = "openai:gpt-4o-mini"
    llm_max_retries: int = 3
    llm_batch_size: int = 30
    llm_max_concurrent_batches: int = 3
    llm_call_delay_seconds: float = 0.5
    llm_burst: int = 3

    # Per-tier model overrides (optional, override the built-in defaults below)
    dev_model_standard: str | None = None
    dev_model_fast: str | None = None
    prod_model_standard: str | None = None
    prod_model_fast: str | None = None

    _MODEL_DEFAULTS: ClassVar[dict[str, dict[str, str]]] = {
        "development": {
            "standard": "openai:gpt-4o-mini",
            "fast": "openai:gpt-4o-mini",
        },
        "staging": {
            "standard": "openai:gpt-4o-mini",
            "fast": "openai:gpt-4o-mini",
        },
        "production": {
            "standard": "anthropic:claude-sonnet-4-5",
            "fast": "anthropic:claude-haiku-4-5",
        },
    }

    def get_model(self, tier: str = "standard") -> str:
        """Resolve the model string for a given tier based on environment.

        Priority: env var override > built-in defaults > default_llm_model fallback.
        """
        env_prefix = "dev" if self.environment in ("development", "staging") else "prod"
        override = getattr(self, f"{env_prefix}_model_{tier}", None)
        if isinstance(override, str) and override:
            return override

        env_defaults = self._MODEL_DEFAULTS.get(self.environment, {})
        resolved = env_defaults.get(tier, self.default_llm_model)
        if isinstance(resolved, str):
            return resolved
        return self.default_llm_model

    # DataForSEO
    dataforseo_login: str | None = None
    dataforseo_password: str | None = None
    dataforseo_timeout_seconds: float = 60.0
    serp_call_delay_seconds: float = 0.2
    serp_burst: int = 2

    # Metrics enrichment
    metrics_batch_size: int = 100
    metrics_batch_delay_seconds: float = 1.0
    metrics_burst: int = 1
    metrics_max_workers: int = 1
    estimate_failed_batches: bool = False

    # Run limits
    run_timeout_seconds: float = 1200.0
    min_stage_seconds: float = 5.0
    progress_queue_size: int = 256
    tier1_max_candidates: int = 300
    use_cluster_median: bool = False

    # Per-call cost table (USD)
    cost_per_llm_call: float = 0.15
    cost_per_metrics_batch: float = 0.20
    cost_per_serp_call: float = 0.05
    cost_per_scraper_call: float = 0.0

    # Competitor mining
    scraper_timeout_seconds: float = 30.0
    competitor_pages_per_seed: int = 3

    @field_validator(
        "metrics_batch_size",
        "metrics_burst",
        "llm_burst",
        "serp_burst",
        "metrics_max_workers",
        "llm_batch_size",
        "llm_max_concurrent_batches",
        "progress_queue_size",
        mode="after",
    )
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        """Clamp worker, batch and queue sizes to a usable minimum."""
        return max(1, int(value))

    def cost_table(self) -> dict[str, float]:
        """Return the per-call cost for every provider."""
        return {
            "llm": self.cost_per_llm_call,
            "metrics": self.cost_per_metrics_batch,
            "serp": self.cost_per_serp_call,
            "scraper": self.cost_per_scraper_call,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
