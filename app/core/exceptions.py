import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.batch.errors import BatchPipelineError, BatchSubmissionError

_INTERNAL_ERROR_DETAIL = "Internal Server Error"
_SUBMISSION_FAILED_DETAIL = "Batch submission failed; see the job record for diagnostics."
# Malformed submissions answer 400 like any other invalid batch input.
_BAD_REQUEST_VALIDATION_ROUTES = frozenset({("POST", "/v1/batches")})


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  # Serialize exception instances explicitly to avoid leaking non-serializable objects.
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None, extra: dict[str, Any] | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  if extra:
    payload.update(extra)
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


def _sanitize_http_detail(detail: Any) -> Any:
  """Return an HTTPException detail payload safe for logs."""
  # Group rows and prompts can carry personal data; keep structure, drop bodies.
  if isinstance(detail, dict):
    return {key: _sanitize_http_detail(value) for key, value in detail.items() if key not in {"input", "body", "payload", "content", "rows"}}

  if isinstance(detail, list):
    return [_sanitize_http_detail(item) for item in detail]

  return detail


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload(_INTERNAL_ERROR_DETAIL, request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  # Keep validation logs concise because 422s are client-correctable and expected.
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
  if (request.method, request.url.path.rstrip("/")) in _BAD_REQUEST_VALIDATION_ROUTES:
    status_code = status.HTTP_400_BAD_REQUEST
  return JSONResponse(status_code=status_code, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from app.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload(_INTERNAL_ERROR_DETAIL, request_id=request_id))

  # Log 4xx HTTPExceptions when explicitly enabled for debugging.
  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, _sanitize_http_detail(exc.detail))

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id))


async def batch_pipeline_exception_handler(request: Request, exc: BatchPipelineError) -> JSONResponse:
  """Map pipeline errors onto their HTTP status; 5xx responses never echo provider diagnostics."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code < 500:
    logger.info("Batch request rejected request_id=%s path=%s status_code=%s error_type=%s detail=%s", request_id, request.url.path, exc.status_code, type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.message, request_id=request_id))

  logger.error("Batch pipeline failure request_id=%s path=%s error_type=%s detail=%s", request_id, request.url.path, type(exc).__name__, exc.message)
  if isinstance(exc, BatchSubmissionError):
    # The full per-model diagnostic is stored on the job; callers get its id to look it up.
    extra = {"jobId": exc.job_id} if exc.job_id else None
    return JSONResponse(status_code=exc.status_code, content=_error_payload(_SUBMISSION_FAILED_DETAIL, request_id=request_id, extra=extra))
  return JSONResponse(status_code=exc.status_code, content=_error_payload(_INTERNAL_ERROR_DETAIL, request_id=request_id))
