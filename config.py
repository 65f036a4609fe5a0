# config.py
from __future__ import annotations
from typing import List, Optional, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices, model_validator

class Settings(BaseSettings):
    # Read .env; ignore extra env vars to avoid crashes
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        env_nested_delimiter="__",
        env_prefix="",
    )

    # --- Runtime env / debugging ---
    APP_ENV: Literal["development", "staging", "production"] = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENV", "app_env"),
    )
    DEBUG: bool = Field(
        default=False,
        validation_alias=AliasChoices("DEBUG", "debug"),
    )
    DEFAULT_CURRENCY: str = Field(
        default="USD",
        validation_alias=AliasChoices("DEFAULT_CURRENCY", "default_currency"),
    )

    # --- Server ---
    PORT: int = Field(
        default=8000,
        validation_alias=AliasChoices("PORT", "port"),
    )
    HOST: str = Field(
        default="0.0.0.0",
        validation_alias=AliasChoices("HOST", "host"),
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "log_level"),
    )

    # --- LLM search service (OpenAI-compatible endpoint) ---
    PERPLEXITY_API_KEY: str = Field(
        default="",
        validation_alias=AliasChoices("PERPLEXITY_API_KEY", "perplexity_api_key"),
    )
    PERPLEXITY_BASE_URL: str = Field(
        default="https://api.perplexity.ai",
        validation_alias=AliasChoices("PERPLEXITY_BASE_URL", "perplexity_base_url"),
    )
    PERPLEXITY_MODEL: str = Field(
        default="sonar-pro",
        validation_alias=AliasChoices("PERPLEXITY_MODEL", "perplexity_model"),
    )
    PERPLEXITY_SUMMARY_MODEL: str = Field(
        default="sonar",
        validation_alias=AliasChoices("PERPLEXITY_SUMMARY_MODEL", "perplexity_summary_model"),
    )
    LLM_TIMEOUT_S: float = Field(
        default=60.0,
        validation_alias=AliasChoices("LLM_TIMEOUT_S", "llm_timeout_s"),
    )
    LLM_TEMPERATURE: float = Field(
        default=0.1,
        validation_alias=AliasChoices("LLM_TEMPERATURE", "llm_temperature"),
    )
    LLM_MAX_TOKENS: int = Field(
        default=4000,
        validation_alias=AliasChoices("LLM_MAX_TOKENS", "llm_max_tokens"),
    )

    # --- Tours marketplace ---
    VIATOR_API_KEY: str = Field(
        default="",
        validation_alias=AliasChoices("VIATOR_API_KEY", "viator_api_key"),
    )
    VIATOR_BASE_URL: str = Field(
        default="https://api.viator.com/partner",
        validation_alias=AliasChoices("VIATOR_BASE_URL", "viator_base_url"),
    )
    VIATOR_MIN_INTERVAL_S: float = Field(
        default=1.0,
        validation_alias=AliasChoices("VIATOR_MIN_INTERVAL_S", "viator_min_interval_s"),
    )
    ENRICHMENT_MATCH_THRESHOLD: float = Field(
        default=0.6,
        validation_alias=AliasChoices("ENRICHMENT_MATCH_THRESHOLD", "enrichment_match_threshold"),
    )
    ENRICHMENT_CONCURRENCY: int = Field(
        default=4,
        validation_alias=AliasChoices("ENRICHMENT_CONCURRENCY", "enrichment_concurrency"),
    )

    # --- Flight GDS ---
    AMADEUS_CLIENT_ID: str = Field(
        default="",
        validation_alias=AliasChoices("AMADEUS_CLIENT_ID", "amadeus_client_id"),
    )
    AMADEUS_CLIENT_SECRET: str = Field(
        default="",
        validation_alias=AliasChoices("AMADEUS_CLIENT_SECRET", "amadeus_client_secret"),
    )
    AMADEUS_BASE_URL: str = Field(
        default="https://test.api.amadeus.com",
        validation_alias=AliasChoices("AMADEUS_BASE_URL", "amadeus_base_url"),
    )
    GDS_MAX_PER_SECOND: int = Field(
        default=10,
        validation_alias=AliasChoices("GDS_MAX_PER_SECOND", "gds_max_per_second"),
    )
    GDS_MAX_PER_5_MINUTES: int = Field(
        default=1000,
        validation_alias=AliasChoices("GDS_MAX_PER_5_MINUTES", "gds_max_per_5_minutes"),
    )
    GDS_MAX_PER_HOUR: int = Field(
        default=5000,
        validation_alias=AliasChoices("GDS_MAX_PER_HOUR", "gds_max_per_hour"),
    )

    # --- Retry policy for remote providers ---
    RETRY_MAX_ATTEMPTS: int = Field(
        default=3,
        validation_alias=AliasChoices("RETRY_MAX_ATTEMPTS", "retry_max_attempts"),
    )
    RETRY_BASE_DELAY_S: float = Field(
        default=0.5,
        validation_alias=AliasChoices("RETRY_BASE_DELAY_S", "retry_base_delay_s"),
    )
    RETRY_MAX_DELAY_S: float = Field(
        default=8.0,
        validation_alias=AliasChoices("RETRY_MAX_DELAY_S", "retry_max_delay_s"),
    )
    RETRY_JITTER_S: float = Field(
        default=0.25,
        validation_alias=AliasChoices("RETRY_JITTER_S", "retry_jitter_s"),
    )

    # --- Activity pipeline ---
    DEDUP_SIMILARITY_THRESHOLD: float = Field(
        default=0.6,
        validation_alias=AliasChoices("DEDUP_SIMILARITY_THRESHOLD", "dedup_similarity_threshold"),
    )
    DEDUP_DURATION_TOLERANCE_MINUTES: float = Field(
        default=30.0,
        validation_alias=AliasChoices("DEDUP_DURATION_TOLERANCE_MINUTES", "dedup_duration_tolerance_minutes"),
    )
    DEDUP_LOCATION_THRESHOLD: float = Field(
        default=0.5,
        validation_alias=AliasChoices("DEDUP_LOCATION_THRESHOLD", "dedup_location_threshold"),
    )
    ACTIVITIES_PER_DAY: int = Field(
        default=3,
        validation_alias=AliasChoices("ACTIVITIES_PER_DAY", "activities_per_day"),
    )
    OPTIMIZER_TIMEOUT_S: float = Field(
        default=45.0,
        validation_alias=AliasChoices("OPTIMIZER_TIMEOUT_S", "optimizer_timeout_s"),
    )
    PLAN_DEADLINE_S: float = Field(
        default=120.0,
        validation_alias=AliasChoices("PLAN_DEADLINE_S", "plan_deadline_s"),
    )
    CATEGORY_CATALOG_PATH: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CATEGORY_CATALOG_PATH", "category_catalog_path"),
    )

    # --- CORS (env-driven) ---
    CORS_ALLOW_ORIGINS: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        validation_alias=AliasChoices("CORS_ALLOW_ORIGINS", "cors_allow_origins"),
    )
    # Optional comma-separated alternative that overrides the above
    FRONTEND_ORIGINS: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("FRONTEND_ORIGINS", "frontend_origins"),
    )
    CORS_ALLOW_CREDENTIALS: bool = Field(
        default=False,
        validation_alias=AliasChoices("CORS_ALLOW_CREDENTIALS", "cors_allow_credentials"),
    )
    CORS_ALLOW_METHODS: List[str] = Field(
        default_factory=lambda: ["GET", "POST", "OPTIONS"],
        validation_alias=AliasChoices("CORS_ALLOW_METHODS", "cors_allow_methods"),
    )
    CORS_ALLOW_HEADERS: List[str] = Field(
        default_factory=lambda: ["Accept", "Accept-Language", "Content-Type", "X-Request-Id"],
        validation_alias=AliasChoices("CORS_ALLOW_HEADERS", "cors_allow_headers"),
    )
    CORS_EXPOSE_HEADERS: List[str] = Field(
        default_factory=lambda: ["X-Request-Id"],
        validation_alias=AliasChoices("CORS_EXPOSE_HEADERS", "cors_expose_headers"),
    )
    CORS_MAX_AGE: int = Field(
        default=86400,
        validation_alias=AliasChoices("CORS_MAX_AGE", "cors_max_age"),
    )

    @model_validator(mode="after")
    def _merge_frontend_origins(self) -> "Settings":
        if self.FRONTEND_ORIGINS:
            parts = [p.strip() for p in self.FRONTEND_ORIGINS.split(",") if p.strip()]
            if parts:
                self.CORS_ALLOW_ORIGINS = parts
        return self

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Refuse to boot a production process without an LLM key."""
        if self.APP_ENV == "production":
            if not self.PERPLEXITY_API_KEY or self.PERPLEXITY_API_KEY in ("", "your-perplexity-api-key-here"):
                raise ValueError(
                    "PERPLEXITY_API_KEY must be set to a valid key in production. "
                    "Get your key from https://www.perplexity.ai/settings/api"
                )

            localhost_origins = [o for o in self.CORS_ALLOW_ORIGINS if "localhost" in o or "127.0.0.1" in o]
            if localhost_origins:
                import logging
                logging.getLogger("config").warning(
                    f"Production environment includes localhost CORS origins: {localhost_origins}. "
                    "Consider removing these for production deployment."
                )
        return self

    @property
    def is_dev(self) -> bool:
        return self.APP_ENV == "development"

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.DEBUG else self.LOG_LEVEL.upper()

    @property
    def marketplace_enabled(self) -> bool:
        return bool(self.VIATOR_API_KEY)

    @property
    def gds_enabled(self) -> bool:
        return bool(self.AMADEUS_CLIENT_ID and self.AMADEUS_CLIENT_SECRET)

settings = Settings()
