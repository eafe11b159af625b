from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import batches, worker
from app.batch.errors import BatchPipelineError
from app.config import get_settings
from app.core.exceptions import batch_pipeline_exception_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware

settings = get_settings()

app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length"])


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(BatchPipelineError, batch_pipeline_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(batches.router, prefix="/v1/batches", tags=["batches"])
app.include_router(worker.router, prefix="/worker", tags=["worker"])
