"""Configuration loading: service registry YAML and environment-sourced run settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from geocadastre.common.constants import CATEGORIES
from geocadastre.common.errors import ConfigError
from geocadastre.common.fs import read_yaml
from geocadastre.common.schema import validate_registry_config

REGISTRY_FILENAME = "services.yml"
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 5
DEFAULT_DRY_RUN_LIMIT = 5
DEFAULT_INTER_ITEM_DELAY_MS = {
    "cadastral": 1000,
    "zoning": 500,
    "municipality": 1000,
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _deep_merge(base: Any, overlay: Any) -> Any:
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            if key in merged:
                merged[key] = _deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged
    return overlay


def _load_yaml_with_overlay(path: Path, overlay_path: Path | None) -> dict:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    base = read_yaml(path) or {}
    if overlay_path is None or not overlay_path.exists():
        return base
    overlay = read_yaml(overlay_path)
    if overlay is None:
        return base
    if not isinstance(overlay, dict):
        raise ConfigError(f"Overlay config must be a mapping: {overlay_path}")
    return _deep_merge(base, overlay)


def load_registry_config(
    config_dir: Path,
    *,
    allow_unknown: bool = False,
    overlay_config_dir: Path | None = None,
) -> dict:
    overlay_path = None
    if overlay_config_dir is not None:
        overlay_path = overlay_config_dir / REGISTRY_FILENAME
    cfg = _load_yaml_with_overlay(config_dir / REGISTRY_FILENAME, overlay_path)
    return validate_registry_config(cfg, allow_unknown=allow_unknown)


@dataclass(frozen=True)
class EnrichmentSettings:
    category: str
    batch_size: int = 50
    concurrency: int = 3
    inter_item_delay_ms: int = 500
    dry_run: bool = False
    max_items: int | None = None
    force_refresh: bool = False
    retry_failed: bool = False
    translate: bool = False
    translate_target_lang: str = "en"

    @property
    def inter_item_delay_s(self) -> float:
        return self.inter_item_delay_ms / 1000.0


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, value))


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{key} must be a boolean flag, got {raw!r}")


def _env_int(environ: Mapping[str, str], key: str, default: int | None) -> int | None:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def load_settings_from_env(category: str, environ: Mapping[str, str] | None = None) -> EnrichmentSettings:
    """Read ``<CATEGORY>_*`` variables, e.g. ``ZONING_DRY_RUN=1``."""
    if category not in CATEGORIES:
        raise ConfigError(f"Unknown enrichment category: {category}")
    env = os.environ if environ is None else environ
    prefix = category.upper()

    dry_run = _env_bool(env, f"{prefix}_DRY_RUN", False)
    max_items = _env_int(env, f"{prefix}_DRY_RUN_LIMIT", None)
    if dry_run and max_items is None:
        max_items = DEFAULT_DRY_RUN_LIMIT
    if max_items is not None and max_items < 1:
        raise ConfigError(f"{prefix}_DRY_RUN_LIMIT must be positive")

    batch_size = _env_int(env, f"{prefix}_BATCH_SIZE", 50)
    if batch_size < 1:
        raise ConfigError(f"{prefix}_BATCH_SIZE must be positive")
    delay_ms = _env_int(env, f"{prefix}_INTER_ITEM_DELAY_MS", DEFAULT_INTER_ITEM_DELAY_MS[category])

    return EnrichmentSettings(
        category=category,
        batch_size=batch_size,
        concurrency=clamp_concurrency(_env_int(env, f"{prefix}_CONCURRENCY", 3)),
        inter_item_delay_ms=max(0, delay_ms),
        dry_run=dry_run,
        max_items=max_items,
        force_refresh=_env_bool(env, f"{prefix}_FORCE_REFRESH", False),
        retry_failed=_env_bool(env, f"{prefix}_RETRY_FAILED", False),
        translate=_env_bool(env, f"{prefix}_TRANSLATE", False),
        translate_target_lang=(env.get(f"{prefix}_TRANSLATE_TARGET_LANG") or "en").strip(),
    )
