"""Normalize uploaded spreadsheet groups into the canonical shape the pipeline submits.

Everything here is a pure transform. Malformed optional hints degrade to None and
non-list rows degrade to an empty list; nothing raises.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Final

from app.batch.models import PreparedGroup

PRODUCTION_ROW_LIMIT: Final[int] = 30
DEFAULT_ROW_LIMIT: Final[int] = 100
GROUP_KEY_SEPARATOR: Final[str] = "|"
UNKNOWN_POSITION: Final[str] = "unknown-position"

_WHITESPACE = re.compile(r"\s+")


def resolve_row_limit(configured: int | None, *, production: bool) -> int:
  """Return the effective row cap: the tier default, tightened by configuration."""
  tier_default = PRODUCTION_ROW_LIMIT if production else DEFAULT_ROW_LIMIT
  if configured is None or configured <= 0:
    return tier_default
  return min(configured, tier_default)


def _optional_text(value: Any) -> str | None:
  if isinstance(value, str):
    stripped = value.strip()
    return stripped or None
  if isinstance(value, int | float) and not isinstance(value, bool):
    return str(value)
  return None


def _limit_rows(rows: Any, row_limit: int) -> list[Any]:
  if not isinstance(rows, list):
    return []
  return rows[:row_limit]


def prepare_groups(raw_groups: list[Any], *, row_limit: int) -> list[PreparedGroup]:
  """Cap rows, assign unique stable keys, and preserve submission order."""
  prepared: list[PreparedGroup] = []
  seen_keys: set[str] = set()
  for order, raw in enumerate(raw_groups):
    group = raw if isinstance(raw, Mapping) else {}
    key = _optional_text(group.get("key")) or f"group-{order}"
    # Keys index the reconciliation map, so a repeated key must not shadow an earlier group.
    if key in seen_keys:
      key = f"{key}#{order}"
    seen_keys.add(key)
    prepared.append(
      PreparedGroup(
        key=key,
        order=order,
        rows=_limit_rows(group.get("rows"), row_limit),
        municipality=_optional_text(group.get("municipality")),
        state=_optional_text(group.get("state")),
        position=_optional_text(group.get("position")),
      )
    )
  return prepared


def _collapse(value: Any) -> str:
  text = value if isinstance(value, str) else "" if value is None else str(value)
  return _WHITESPACE.sub(" ", text).strip()


def normalize_group_key(row: Mapping[str, Any]) -> str:
  """Build the `municipality|state|position` key used to bucket spreadsheet rows."""
  city = _collapse(row.get("municipality")).lower()
  state = _collapse(row.get("state")).lower()
  position = _collapse(row.get("position")).lower() or UNKNOWN_POSITION
  return GROUP_KEY_SEPARATOR.join([city, state, position])


def group_rows(rows: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
  """Bucket flat spreadsheet rows into raw groups sorted by state, municipality, position."""
  buckets: dict[str, dict[str, Any]] = {}
  for row in rows:
    key = normalize_group_key(row)
    bucket = buckets.get(key)
    if bucket is None:
      bucket = {"key": key, "municipality": _collapse(row.get("municipality")), "state": _collapse(row.get("state")), "position": _collapse(row.get("position")), "rows": []}
      buckets[key] = bucket
    bucket["rows"].append(dict(row))

  return sorted(buckets.values(), key=lambda item: (item["state"], item["municipality"], item["position"]))
