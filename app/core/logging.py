import logging
import logging.handlers
import sys
import time
import traceback
from pathlib import Path
from types import TracebackType

from app.config import Settings

LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

_LOG_FILE_PATH: Path | None = None
_LOGGING_INITIALIZED = False


class TruncatedFormatter(logging.Formatter):
  """Formatter that keeps only the head and tail of a traceback."""

  def __init__(self, fmt: str | None = None, datefmt: str | None = None, *, tail_lines: int = 5) -> None:
    super().__init__(fmt, datefmt=datefmt)
    self._tail_lines = tail_lines

  # ruff: noqa: N802
  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:
    lines = traceback.format_exception(*ei)
    if len(lines) > self._tail_lines + 1:
      return "".join(lines[:1] + ["    ...\n"] + lines[-self._tail_lines :])
    return "".join(lines)


def rotated_log_name(default_name: str) -> str:
  """Rename rotated backups from `app.log.1` to `app.log-1`."""
  base, _, suffix = default_name.rpartition(".")
  if base and suffix.isdigit():
    return f"{base}-{suffix}"
  return default_name


def _build_handlers(settings: Settings, log_dir: Path) -> tuple[logging.Handler, logging.Handler, Path]:
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Failed to create log directory at {log_dir}: {exc}") from exc

  log_path = log_dir / f"rollcall_batch_{time.strftime('%Y%m%d_%H%M%S')}.log"
  try:
    # Touch early so the file exists even if handlers have not flushed yet.
    log_path.touch(exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Failed to create log file at {log_path}: {exc}") from exc

  stream = logging.StreamHandler(sys.stdout)
  stream.setFormatter(TruncatedFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))

  file_handler = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  file_handler.namer = rotated_log_name
  file_handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  return stream, file_handler, log_path


def setup_logging(settings: Settings, *, log_dir: Path | None = None) -> Path:
  """Route uvicorn, fastapi and app loggers through the shared handlers."""
  target_dir = log_dir or Path(__file__).resolve().parents[2] / "logs"
  stream_handler, file_handler, log_path = _build_handlers(settings, target_dir)
  for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
    log = logging.getLogger(logger_name)
    log.handlers = [stream_handler, file_handler]
    log.propagate = False

  level = logging.DEBUG if settings.debug else logging.INFO
  logging.basicConfig(level=level, handlers=[stream_handler, file_handler], force=True)
  # The SDK's HTTP client logs every poll request at INFO.
  logging.getLogger("httpx").setLevel(logging.WARNING)
  if not log_path.exists():
    raise RuntimeError(f"Logging initialization failed; log file missing at {log_path}")
  return log_path


def initialize_logging(settings: Settings) -> None:
  """Initialize logging once per process and log where output goes."""
  global _LOG_FILE_PATH, _LOGGING_INITIALIZED
  logger = logging.getLogger("app.core.logging")
  if _LOGGING_INITIALIZED:
    return
  _LOG_FILE_PATH = setup_logging(settings)
  _LOGGING_INITIALIZED = True
  logger.info("Logging initialized. Writing to %s", _LOG_FILE_PATH)
  logger.info("Batch provider enabled=%s model=%s fallback=%s", settings.gemini_enabled, settings.gemini_model, settings.gemini_model_fallback)
