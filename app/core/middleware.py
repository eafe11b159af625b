import logging
import re
import time
import uuid
from typing import Any, Final

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("app.core.middleware")

# Schedulers driving the worker tick may pass their own correlation id; anything else gets a fresh one.
_REQUEST_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9._-]{8,64}")
_BATCH_JOB_PATH: Final[re.Pattern[str]] = re.compile(r"/v1/batches/(?P<job_id>[^/]+)/?")


def _resolve_request_id(scope: Scope) -> str:
  incoming = Headers(scope=scope).get("x-request-id")
  if incoming and _REQUEST_ID_PATTERN.fullmatch(incoming):
    return incoming
  return str(uuid.uuid4())


def describe_batch_route(method: str, path: str) -> tuple[str, str | None]:
  """Name the batch operation a request targets and the job id in its path, if any."""
  trimmed = path.rstrip("/") or "/"
  if trimmed == "/v1/batches" and method == "POST":
    return "submit", None
  match = _BATCH_JOB_PATH.fullmatch(path)
  if match and method == "GET":
    return "status", match.group("job_id")
  if trimmed == "/worker/batches/tick":
    return "tick", None
  if trimmed == "/health":
    return "health", None
  return "other", None


class RequestLoggingMiddleware:
  """Log each request with its batch operation and job id, and tag the response with a request id.

  Bodies are never read here: batch submissions carry raw rows and prompts.
  """

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    request_id = _resolve_request_id(scope)
    scope.setdefault("state", {})["request_id"] = request_id
    method = scope.get("method", "UNKNOWN")
    operation, job_id = describe_batch_route(method, scope.get("path", ""))

    started = time.perf_counter()
    status_code: int | None = None

    async def send_wrapper(message: dict[str, Any]) -> None:
      nonlocal status_code
      if message.get("type") == "http.response.start":
        status_code = message.get("status")
        headers = MutableHeaders(scope=message)
        headers["x-request-id"] = request_id
        # Drop the uvicorn server banner.
        if "server" in headers:
          del headers["server"]

      await send(message)

    try:
      await self.app(scope, receive, send_wrapper)
    finally:
      elapsed_ms = (time.perf_counter() - started) * 1000
      log = logger.warning if status_code is None or status_code >= 500 else logger.info
      log("Batch API request_id=%s op=%s method=%s job_id=%s status=%s took_ms=%.2f", request_id, operation, method, job_id or "-", status_code or 0, elapsed_ms)
