from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger("doki_chat.prompts")

_CACHE: dict[str, tuple[int | None, Any]] = {}


def data_dir() -> Path:
    return Path(__file__).with_name("data")


def read_text(path: Path) -> str:
    last_exc: Exception | None = None
    for encoding in ("utf-8-sig", "utf-8", "cp1251"):
        try:
            return path.read_text(encoding=encoding)
        except Exception as exc:
            last_exc = exc
    if last_exc is not None:
        raise last_exc
    raise RuntimeError(f"Unable to read JSON file: {path}")


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def load_json_document(path: Path) -> Any:
    """Parse a JSON file, reusing the previous result while its mtime is unchanged.

    Returns None when the file is missing or unreadable.
    """
    key = str(path.resolve())
    mtime = _mtime_ns(path)
    cached = _CACHE.get(key)
    if cached is not None and cached[0] == mtime:
        return copy.deepcopy(cached[1])

    document: Any = None
    if mtime is not None:
        try:
            document = json.loads(read_text(path))
        except Exception as exc:
            logger.warning("Failed to parse JSON %s (%s); ignoring file", path, exc)
            document = None

    _CACHE[key] = (mtime, copy.deepcopy(document))
    return document


def _deep_merge(base: Any, override: Any) -> Any:
    if isinstance(base, dict) and isinstance(override, dict):
        merged = {key: copy.deepcopy(value) for key, value in base.items()}
        for key, value in override.items():
            merged[key] = _deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
        return merged
    return copy.deepcopy(override)


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    override = load_json_document(data_dir() / filename)
    if override is None:
        return copy.deepcopy(defaults)
    if not isinstance(override, dict):
        logger.warning("Prompt JSON root must be an object: %s (using defaults)", filename)
        return copy.deepcopy(defaults)
    return _deep_merge(defaults, override)
