"""Conservative token estimates used for admission accounting."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Final

from app.batch.contracts import BatchRequest

CHARS_PER_TOKEN: Final[int] = 4
MIN_TOKENS_PER_REQUEST: Final[int] = 1


@dataclass(frozen=True)
class TokenEstimate:
  per_request: list[int]
  total: int


def estimate_tokens_for_text(text: str) -> int:
  """Estimate tokens for raw text; never below the per-request floor."""
  return max(MIN_TOKENS_PER_REQUEST, math.ceil(len(text) / CHARS_PER_TOKEN))


def _iter_text_parts(contents: Iterable[dict[str, Any]]) -> Iterable[str]:
  for content in contents:
    for part in content.get("parts") or []:
      text = part.get("text") if isinstance(part, dict) else None
      if isinstance(text, str):
        yield text


def estimate_tokens_for_request(request: BatchRequest) -> int:
  return estimate_tokens_for_text("".join(_iter_text_parts(request.contents)))


def estimate_tokens_for_batch(requests: list[BatchRequest]) -> TokenEstimate:
  per_request = [estimate_tokens_for_request(request) for request in requests]
  return TokenEstimate(per_request=per_request, total=sum(per_request))
