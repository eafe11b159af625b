"""Prompt and response-schema loading for the two batch stages."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Final

from app.config import Settings

PROMPTS_DIR: Final[Path] = Path(__file__).resolve().parent / "prompts"
DEFAULT_ANALYZE_PROMPT_PATH: Final[Path] = PROMPTS_DIR / "analyze.md"
DEFAULT_STRUCTURE_PROMPT_PATH: Final[Path] = PROMPTS_DIR / "structure.md"
DEFAULT_STRUCTURE_SCHEMA_PATH: Final[Path] = PROMPTS_DIR / "structure_schema.json"

_SCHEMA_TYPES: Final[dict[str, str]] = {"object": "OBJECT", "array": "ARRAY", "string": "STRING", "number": "NUMBER", "integer": "INTEGER", "boolean": "BOOLEAN", "null": "NULL"}


@lru_cache(maxsize=16)
def _read_text(path: str) -> str:
  return Path(path).read_text(encoding="utf-8")


def _resolve(configured: str | None, default: Path) -> str:
  if configured:
    return str(Path(configured).expanduser().resolve())
  return str(default)


def load_analyze_prompt(settings: Settings) -> str:
  return _read_text(_resolve(settings.analyze_prompt_path, DEFAULT_ANALYZE_PROMPT_PATH))


def load_structure_prompt(settings: Settings) -> str:
  return _read_text(_resolve(settings.structure_prompt_path, DEFAULT_STRUCTURE_PROMPT_PATH))


def load_structure_schema(settings: Settings) -> dict[str, Any]:
  """Load the JSON-Schema file and convert it to the provider's schema dialect."""
  raw = _read_text(_resolve(settings.structure_schema_path, DEFAULT_STRUCTURE_SCHEMA_PATH))
  return convert_schema(json.loads(raw))


def convert_schema(node: Any) -> dict[str, Any]:
  """Translate a JSON-Schema node into the subset the provider accepts.

  Only `type`, `enum`, `required`, `properties` and `items` survive; unknown type
  names are dropped rather than rejected so hand-edited schema files stay usable.
  """
  if not isinstance(node, dict):
    return {}
  output: dict[str, Any] = {}
  raw_type = node.get("type")
  if isinstance(raw_type, str) and raw_type.lower() in _SCHEMA_TYPES:
    output["type"] = _SCHEMA_TYPES[raw_type.lower()]
  if isinstance(node.get("enum"), list):
    output["enum"] = [str(value) for value in node["enum"]]
  if isinstance(node.get("required"), list):
    output["required"] = list(node["required"])
  if isinstance(node.get("properties"), dict):
    output["properties"] = {key: convert_schema(value) for key, value in node["properties"].items()}
  if node.get("items"):
    output["items"] = convert_schema(node["items"])
  return output
