"""Provider implementations."""

from app.ai.providers.base import BatchProvider
from app.ai.providers.gemini import GeminiBatchProvider

__all__ = ["BatchProvider", "GeminiBatchProvider"]
