"""Retry transient Postgres failures around whole batch-job transactions."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Conflicts the advisory lock and conditional updates can still hit under load.
_RETRYABLE_SQLSTATES = {"40001": "serialization_conflict", "40P01": "deadlock"}
_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe")


@dataclass(frozen=True)
class DBFailureClassification:
  retryable: bool
  category: str
  sqlstate: str | None = None


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a wrapped driver error."""
  if not isinstance(exc, DBAPIError):
    return None
  orig = getattr(exc, "orig", None)
  # asyncpg exposes `sqlstate`; psycopg exposes `pgcode`.
  for attr in ("sqlstate", "pgcode"):
    value = getattr(orig, attr, None)
    if value:
      return str(value)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """Only conflicts and dropped connections are retried; everything else fails fast.

  Integrity, schema, and permission errors (SQLSTATE classes 23, 42, 28) are
  permanent, and pipeline errors such as an invalid transition are never
  database failures at all.
  """
  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], sqlstate=sqlstate)
  if sqlstate and sqlstate[:2] in {"23", "42", "28"}:
    return DBFailureClassification(retryable=False, category=f"sqlstate_class_{sqlstate[:2]}", sqlstate=sqlstate)
  if isinstance(exc, OperationalError) and any(pattern in str(exc).lower() for pattern in _CONNECTIVITY_PATTERNS):
    return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)
  return DBFailureClassification(retryable=False, category=type(exc).__name__, sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
  """Run `func` (a whole, idempotent transaction) and retry it on transient failures.

  Args:
    operation_name: Label used in logs, e.g. "batch_job_transition".
    func: Zero-argument coroutine factory; each attempt opens its own session.
    max_attempts: Total attempts including the first.

  Raises:
    The last exception when it is not retryable or attempts run out.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      if not classification.retryable or attempt >= max_attempts:
        if classification.retryable:
          logger.error("DB operation failed after %d attempts: operation=%s category=%s sqlstate=%s", attempt, operation_name, classification.category, classification.sqlstate or "none")
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      logger.warning("Retrying DB operation: operation=%s attempt=%d/%d category=%s backoff_ms=%.1f", operation_name, attempt, max_attempts, classification.category, backoff_ms)
      await sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("DB operation succeeded after retry: operation=%s attempt=%d", operation_name, attempt)
    return result
