"""Shared utilities."""

from __future__ import annotations

import secrets
import time
from typing import Any

import orjson

SUMMARY_MAX_CHARS = 100


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    """Chronologically sortable opaque id: 12 hex digits of epoch ms + 14 random."""
    return f"{now_ms():012x}{secrets.token_hex(7)}"


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def generate_summary(content: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    text = (content or "").strip()
    if len(text) > max_chars:
        return text[:max_chars] + "..."
    return text


def dedupe(items) -> list:
    """Order-preserving de-duplication."""
    seen = set()
    out = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out
