from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("live_role_memory.prompts")

_CACHE: dict[str, tuple[int | None, dict[str, Any]]] = {}


def prompt_data_dir() -> Path:
    override = os.getenv("MEMORY_PROMPTS_DIR", "").strip()
    if override:
        return Path(override)
    return Path(__file__).with_name("data")


def _deep_merge(base: Any, override: Any) -> Any:
    if not (isinstance(base, dict) and isinstance(override, dict)):
        return copy.deepcopy(override)
    merged = copy.deepcopy(base)
    for key, value in override.items():
        merged[key] = _deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
    return merged


def _read_overrides(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        logger.info("Prompt overrides not found: %s (using defaults)", path)
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read prompt overrides %s (%s). Using defaults.", path, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Prompt overrides root must be an object: %s (using defaults)", path)
        return None
    return payload


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    """Defaults deep-merged with `<data dir>/<filename>`; re-read when the file changes."""
    path = prompt_data_dir() / filename
    cache_key = str(path.resolve())
    try:
        mtime_ns: int | None = path.stat().st_mtime_ns
    except OSError:
        mtime_ns = None

    cached = _CACHE.get(cache_key)
    if cached is not None and cached[0] == mtime_ns:
        return copy.deepcopy(cached[1])

    overrides = _read_overrides(path)
    merged = _deep_merge(defaults, overrides) if overrides is not None else copy.deepcopy(defaults)
    _CACHE[cache_key] = (mtime_ns, copy.deepcopy(merged))
    return merged
