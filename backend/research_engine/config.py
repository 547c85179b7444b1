from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

repo_env = Path(__file__).resolve().parents[2] / ".env"

load_dotenv()
if repo_env.exists():
    # Prefer repository .env for deterministic local runs.
    load_dotenv(repo_env, override=True)


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    parts = [part.strip() for part in value.replace(";", ",").split(",")]
    return [part for part in parts if part]


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_TRUSTED_DOMAINS = [
    # Consumer and product testing.
    "consumerreports.org",
    "wirecutter.com",
    "nytimes.com",
    "goodhousekeeping.com",
    "bhg.com",
    # Public institutions.
    "nih.gov",
    "cdc.gov",
    "who.int",
    "usda.gov",
    "ftc.gov",
    # Credible media.
    "reuters.com",
    "apnews.com",
    "bbc.com",
    "gov",
    "edu",
]

DEFAULT_BLOCKED_DOMAINS = [
    "pinterest.com",
]

DEFAULT_PROVIDER_ORDER = ["tavily", "serper", "duckduckgo"]


@dataclass
class Settings:
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    llm_model_planner: str = "gpt-4o-mini"
    llm_model_researcher: str = "gpt-4o-mini"
    llm_model_reporter: str = "gpt-4o-mini"
    research_model_temperature: float = 0.0
    llm_timeout_seconds: float = 80.0
    llm_retry_attempts: int = 2

    tavily_api_key: str = ""
    serper_api_key: str = ""
    search_provider_order: list[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_ORDER))
    search_retry_attempts: int = 2
    search_results_limit: int = 8

    fetch_timeout_seconds: float = 10.0
    fetch_max_chars: int = 12_000
    max_fetch_per_attempt: int = 3

    sub_question_concurrency: int = 3
    trusted_domains: list[str] = field(default_factory=lambda: list(DEFAULT_TRUSTED_DOMAINS))
    blocked_domains: list[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_DOMAINS))

    db_path: str = "data/research.db"
    resume_interrupted_runs: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            llm_base_url=os.getenv("LLM_BASE_URL") or cls.llm_base_url,
            llm_api_key=os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "",
            llm_model_planner=os.getenv("LLM_MODEL_PLANNER") or os.getenv("LLM_MODEL") or cls.llm_model_planner,
            llm_model_researcher=os.getenv("LLM_MODEL_RESEARCHER") or os.getenv("LLM_MODEL") or cls.llm_model_researcher,
            llm_model_reporter=os.getenv("LLM_MODEL_REPORTER") or os.getenv("LLM_MODEL") or cls.llm_model_reporter,
            research_model_temperature=float(os.getenv("RESEARCH_MODEL_TEMPERATURE", "0")),
            llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "80")),
            llm_retry_attempts=max(1, int(os.getenv("LLM_RETRY_ATTEMPTS", "2"))),
            tavily_api_key=os.getenv("TAVILY_API_KEY", ""),
            serper_api_key=os.getenv("SERPER_API_KEY", ""),
            search_provider_order=_parse_csv(os.getenv("RESEARCH_SEARCH_PROVIDER_ORDER")) or list(DEFAULT_PROVIDER_ORDER),
            search_retry_attempts=max(1, int(os.getenv("SEARCH_RETRY_ATTEMPTS", "2"))),
            search_results_limit=max(1, int(os.getenv("SEARCH_RESULTS_LIMIT", "8"))),
            fetch_timeout_seconds=float(os.getenv("FETCH_TIMEOUT_SECONDS", "10")),
            fetch_max_chars=int(os.getenv("FETCH_MAX_CHARS", "12000")),
            max_fetch_per_attempt=max(1, int(os.getenv("MAX_FETCH_PER_ATTEMPT", "3"))),
            sub_question_concurrency=max(1, int(os.getenv("SUB_QUESTION_CONCURRENCY", "3"))),
            trusted_domains=_parse_csv(os.getenv("TRUSTED_DOMAINS")) or list(DEFAULT_TRUSTED_DOMAINS),
            blocked_domains=_parse_csv(os.getenv("BLOCKED_DOMAINS")) or list(DEFAULT_BLOCKED_DOMAINS),
            db_path=os.getenv("RESEARCH_DB_PATH", "data/research.db"),
            resume_interrupted_runs=_parse_bool(os.getenv("RESUME_INTERRUPTED_RUNS"), True),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
