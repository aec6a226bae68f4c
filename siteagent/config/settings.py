"""
Site Agent Orchestrator - Configuration Settings
Platform credentials, model choice, crawl tuning, fallback scraping,
quality thresholds, timing and retry budgets.
"""

import json
from typing import Annotated, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_EXCLUDE_TAGS = [
    "nav",
    "footer",
    "header",
    "aside",
    "script",
    "style",
    "form",
    "iframe",
    "noscript",
]

DEFAULT_QUALITY_QUESTION = (
    "What is this website about? Briefly describe the main products, "
    "services or topics it covers."
)


class Settings(BaseSettings):
    """Site Agent Orchestrator settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Platform API ──────────────────────────────────────────────────
    api_token: Optional[str] = Field(default=None, alias="DO_API_TOKEN")
    api_base: str = Field(default="https://api.digitalocean.com/v2", alias="DO_API_BASE")
    region: str = Field(default="tor1", alias="DO_REGION")
    http_timeout: float = Field(default=30.0, alias="HTTP_TIMEOUT")

    # ── Models ────────────────────────────────────────────────────────
    embedding_model_uuid: str = Field(
        default="22653204-79ed-11ef-bf8f-4e013e2ddde4",
        alias="DO_EMBEDDING_MODEL_UUID",
    )
    llm_model_uuid: str = Field(
        default="9a364867-f300-11ef-bf8f-4e013e2ddde4",
        alias="DO_LLM_MODEL_UUID",
    )

    # ── Pre-known resources (skip discovery) ──────────────────────────
    database_id: Optional[str] = Field(default=None, alias="DO_DATABASE_ID")
    project_id: Optional[str] = Field(default=None, alias="DO_PROJECT_ID")
    project_name: str = Field(default="Site Agents", alias="PROJECT_NAME")

    # ── Agent Defaults ────────────────────────────────────────────────
    agent_name_prefix: str = Field(default="Assistant", alias="AGENT_NAME_PREFIX")
    agent_public: bool = Field(default=False, alias="AGENT_PUBLIC")

    # ── Crawler ───────────────────────────────────────────────────────
    crawl_exclude_tags: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_TAGS),
        alias="CRAWL_EXCLUDE_TAGS",
    )
    crawl_embed_media: bool = Field(default=False, alias="CRAWL_EMBED_MEDIA")
    crawl_max_pages_small: int = Field(default=10, alias="CRAWL_MAX_PAGES_SMALL")
    crawl_max_pages_large: int = Field(default=50, alias="CRAWL_MAX_PAGES_LARGE")
    crawl_large_site_threshold: int = Field(default=100, alias="CRAWL_LARGE_SITE_THRESHOLD")

    # ── Firecrawl Fallback (optional) ─────────────────────────────────
    firecrawl_api_key: Optional[str] = Field(default=None, alias="FIRECRAWL_API_KEY")
    firecrawl_api_base: str = Field(default="https://api.firecrawl.dev/v1", alias="FIRECRAWL_API_BASE")
    fallback_mode: str = Field(default="scrape", alias="FALLBACK_MODE")
    firecrawl_poll_interval: float = Field(default=2.0, alias="FIRECRAWL_POLL_INTERVAL")
    firecrawl_max_polls: int = Field(default=30, alias="FIRECRAWL_MAX_POLLS")

    # ── Content Quality ───────────────────────────────────────────────
    quality_min_keyword_matches: int = Field(default=2, alias="QUALITY_MIN_KEYWORD_MATCHES")
    quality_min_response_length: int = Field(default=50, alias="QUALITY_MIN_RESPONSE_LENGTH")
    quality_check_question: str = Field(default=DEFAULT_QUALITY_QUESTION, alias="QUALITY_CHECK_QUESTION")

    # ── Timing (seconds) ──────────────────────────────────────────────
    database_ready_timeout: float = Field(default=120.0, alias="DATABASE_READY_TIMEOUT")
    database_ready_poll_interval: float = Field(default=5.0, alias="DATABASE_READY_POLL_INTERVAL")
    attach_max_attempts: int = Field(default=3, alias="ATTACH_MAX_ATTEMPTS")
    attach_retry_delay: float = Field(default=2.0, alias="ATTACH_RETRY_DELAY")

    # ── Retry Budgets ─────────────────────────────────────────────────
    # Creation calls wait longer between attempts than polling calls.
    create_retry_max: int = Field(default=3, alias="CREATE_RETRY_MAX")
    create_retry_initial_delay: float = Field(default=2.0, alias="CREATE_RETRY_INITIAL_DELAY")
    create_retry_max_delay: float = Field(default=30.0, alias="CREATE_RETRY_MAX_DELAY")
    poll_retry_max: int = Field(default=3, alias="POLL_RETRY_MAX")
    poll_retry_initial_delay: float = Field(default=0.5, alias="POLL_RETRY_INITIAL_DELAY")
    poll_retry_max_delay: float = Field(default=5.0, alias="POLL_RETRY_MAX_DELAY")

    # ── Logging ───────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def fallback_enabled(self) -> bool:
        return bool(self.firecrawl_api_key)

    @field_validator("fallback_mode")
    @classmethod
    def validate_fallback_mode(cls, v: str) -> str:
        allowed = ["scrape", "crawl"]
        if v.lower() not in allowed:
            raise ValueError(f"fallback_mode must be one of {allowed}, got '{v}'")
        return v.lower()

    @field_validator("crawl_exclude_tags", mode="before")
    @classmethod
    def split_exclude_tags(cls, v):
        # Accept "nav,footer,script" from the environment as well as JSON lists
        if isinstance(v, str):
            if v.strip().startswith("["):
                return json.loads(v)
            return [t.strip() for t in v.split(",") if t.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return v.upper()


settings = Settings()
