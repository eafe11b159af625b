"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_PRODUCTION_ENVIRONMENTS = {"production", "prod"}
# Provider inline payloads are capped at 20MB; stay comfortably below it.
_DEFAULT_INLINE_LIMIT_BYTES = 18 * 1024 * 1024


@dataclass(frozen=True)
class Settings:
  """Typed settings for the batch engine service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  task_secret: str | None
  gemini_enabled: bool
  gemini_api_key: str | None
  gemini_model: str
  gemini_model_fallback: str
  gemini_max_output_tokens: int
  gemini_thinking_enabled: bool
  gemini_thinking_budget: int
  max_rows_per_group: int | None
  inline_limit_bytes: int
  poll_interval_seconds: float
  poll_timeout_seconds: float
  stage_timeout_seconds: float
  max_active_jobs: int
  max_active_tokens: int
  max_analyze_per_tick: int
  max_structure_per_tick: int
  max_ingest_per_tick: int
  analyze_prompt_path: str | None
  structure_prompt_path: str | None
  structure_schema_path: str | None

  @property
  def is_production(self) -> bool:
    return self.environment in _PRODUCTION_ENVIRONMENTS


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("ROLLCALL_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("ROLLCALL_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("ROLLCALL_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _non_negative_int(name: str, default: str) -> int:
  # Zero is meaningful here, e.g. a thinking budget of 0 disables thinking on the model side.
  value = int(os.getenv(name, default).strip() or default)
  if value < 0:
    raise ValueError(f"{name} must be zero or a positive integer.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("ROLLCALL_ENV", "development").strip().lower()
  is_production = environment in _PRODUCTION_ENVIRONMENTS

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("ROLLCALL_DEBUG"))

  log_max_bytes = _positive_int("ROLLCALL_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("ROLLCALL_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("ROLLCALL_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # The provider is only called by default in production; everywhere else the mock path runs.
  raw_enabled = os.getenv("GEMINI_ENABLED")
  gemini_enabled = is_production if raw_enabled is None else _parse_bool(raw_enabled)
  gemini_api_key = _optional_str(os.getenv("GEMINI_API_KEY"))
  if gemini_enabled and not gemini_api_key:
    raise ValueError("GEMINI_API_KEY must be set when GEMINI_ENABLED is on.")

  gemini_model = _optional_str(os.getenv("GEMINI_MODEL")) or "gemini-2.5-pro"
  gemini_model_fallback = _optional_str(os.getenv("GEMINI_MODEL_FALLBACK")) or "gemini-1.5-pro"

  # Poll cadence has floors so a misconfigured worker cannot hammer the provider.
  poll_interval_seconds = max(5.0, float(os.getenv("GEMINI_BATCH_POLL_INTERVAL_SECONDS", "15")))
  poll_timeout_seconds = max(60.0, float(os.getenv("GEMINI_BATCH_POLL_TIMEOUT_SECONDS", "600")))
  stage_timeout_seconds = float(os.getenv("GEMINI_BATCH_STAGE_TIMEOUT_SECONDS", "86400"))
  if stage_timeout_seconds <= 0:
    raise ValueError("GEMINI_BATCH_STAGE_TIMEOUT_SECONDS must be positive.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("ROLLCALL_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("ROLLCALL_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("ROLLCALL_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("ROLLCALL_PG_CONNECT_TIMEOUT", "5"),
    task_secret=_optional_str(os.getenv("ROLLCALL_TASK_SECRET")),
    gemini_enabled=gemini_enabled,
    gemini_api_key=gemini_api_key,
    gemini_model=gemini_model,
    gemini_model_fallback=gemini_model_fallback,
    gemini_max_output_tokens=_positive_int("GEMINI_MAX_OUTPUT_TOKENS", "4096"),
    gemini_thinking_enabled=_parse_bool(os.getenv("GEMINI_THINKING")),
    gemini_thinking_budget=_non_negative_int("GEMINI_THINKING_BUDGET", "0"),
    max_rows_per_group=_parse_optional_int(os.getenv("GEMINI_MAX_ROWS")),
    inline_limit_bytes=_positive_int("GEMINI_BATCH_INLINE_LIMIT_BYTES", str(_DEFAULT_INLINE_LIMIT_BYTES)),
    poll_interval_seconds=poll_interval_seconds,
    poll_timeout_seconds=poll_timeout_seconds,
    stage_timeout_seconds=stage_timeout_seconds,
    max_active_jobs=_positive_int("GEMINI_BATCH_MAX_ACTIVE_JOBS", "100"),
    max_active_tokens=_positive_int("GEMINI_BATCH_MAX_ACTIVE_TOKENS", "5000000"),
    max_analyze_per_tick=_positive_int("GEMINI_BATCH_MAX_ANALYZE_PER_TICK", "3"),
    max_structure_per_tick=_positive_int("GEMINI_BATCH_MAX_STRUCTURE_PER_TICK", "3"),
    max_ingest_per_tick=_positive_int("GEMINI_BATCH_MAX_INGEST_PER_TICK", "2"),
    analyze_prompt_path=_optional_str(os.getenv("GEMINI_PROMPT_ANALYZE_PATH")),
    structure_prompt_path=_optional_str(os.getenv("GEMINI_PROMPT_STRUCTURE_PATH")),
    structure_schema_path=_optional_str(os.getenv("GEMINI_STRUCTURE_SCHEMA_PATH")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations and the worker script don't require unrelated env vars.
  debug = _parse_bool(os.getenv("ROLLCALL_DEBUG"))
  pg_connect_timeout = _positive_int("ROLLCALL_PG_CONNECT_TIMEOUT", "5")

  # Support fallback to DATABASE_URL for hosted Postgres providers.
  pg_dsn = os.getenv("ROLLCALL_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _parse_optional_int(raw: str | None) -> int | None:
  if raw is None or raw.strip() == "":
    return None

  value = int(raw)

  if value <= 0:
    raise ValueError("Optional integer settings must be positive when provided.")

  return value
