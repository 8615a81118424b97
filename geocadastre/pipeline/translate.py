"""Best-effort label translation hook."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from geocadastre.common.logging import log_event

LOGGER = logging.getLogger(__name__)


class Translator(Protocol):
    def translate_label(self, text: str, hints: Mapping[str, Any]) -> Mapping[str, Any] | None: ...


class NullTranslator:
    def translate_label(self, text: str, hints: Mapping[str, Any]) -> Mapping[str, Any] | None:
        return None


def apply_translation(
    payload: dict[str, Any],
    translator: Translator,
    *,
    target_lang: str = "en",
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Add ``label_<lang>`` to the payload when the translator returns one.

    Translator failures never affect the payload.
    """
    label = payload.get("label")
    if not isinstance(label, str) or not label.strip():
        return payload
    key = f"label_{target_lang}"
    hints = {
        "target_lang": target_lang,
        "region": payload.get("region"),
        "country": payload.get("country"),
        "picked_field": payload.get("picked_field"),
    }
    try:
        result = translator.translate_label(label, hints)
    except Exception as exc:
        log_event(
            logger or LOGGER,
            f"label translation failed: {exc}",
            level=logging.WARNING,
            event="TRANSLATION_FAILED",
            status="error",
            region=payload.get("region"),
        )
        return payload
    if result and isinstance(result.get(key), str) and result[key].strip():
        payload[key] = result[key].strip()
    return payload
