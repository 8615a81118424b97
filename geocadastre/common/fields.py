"""Property-bag helpers shared by routing and normalisation."""

from __future__ import annotations

import math
from typing import Any, Iterable


def lookup_first(attributes: dict, candidates: Iterable[str]) -> object | None:
    for key in candidates:
        if key in attributes and attributes[key] not in (None, ""):
            return attributes[key]
    return None


def lookup_first_with_key(attributes: dict, candidates: Iterable[str]) -> tuple[str | None, object | None]:
    for key in candidates:
        if key in attributes and attributes[key] not in (None, "") and not isinstance(attributes[key], dict):
            return key, attributes[key]
    return None, None


def safe_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def code_from_href(value: Any) -> str | None:
    """Last path segment of a code-list URI, or the value itself."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text.rstrip("/").rsplit("/", 1)[-1].rsplit("#", 1)[-1]
