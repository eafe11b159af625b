import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.core.database import dispose_db_engine
from app.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging after uvicorn starts and release the connection pool on shutdown."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  try:
    initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
    logger.info("Database DSN=%s", _redact_dsn(settings.pg_dsn))
  except Exception:  # noqa: BLE001
    # Logging failures should not block serving; uvicorn's handlers still work.
    logger.warning("Initial logging setup failed.", exc_info=True)

  yield

  if await dispose_db_engine():
    logger.info("Database engine disposed.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
