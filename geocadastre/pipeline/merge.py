"""Non-destructive merge of category payloads into an enrichment document."""

from __future__ import annotations

import copy
from typing import Any, Mapping

from geocadastre.common.errors import MergeDataLossError


class ResultAggregator:
    """Writes one category into a document without touching the others.

    ``combine`` does the actual write and may be overridden; ``merge`` checks
    its output and raises ``MergeDataLossError`` if any other category was
    dropped or altered. The input document is never mutated.
    """

    def combine(self, existing: Mapping[str, Any], category_key: str, new_record: Any) -> dict[str, Any]:
        merged = dict(existing)
        merged[category_key] = new_record
        return merged

    def merge(self, existing: Mapping[str, Any] | None, category_key: str, new_record: Any) -> dict[str, Any]:
        existing = existing or {}
        snapshot = copy.deepcopy(dict(existing))
        merged = self.combine(copy.deepcopy(snapshot), category_key, new_record)

        missing = sorted(key for key in snapshot if key != category_key and key not in merged)
        changed = sorted(
            key for key in snapshot if key != category_key and key in merged and merged[key] != snapshot[key]
        )
        if missing or changed:
            raise MergeDataLossError(
                f"Merging {category_key} would lose or alter existing keys: {', '.join(missing + changed)}",
                missing_keys=missing + changed,
            )
        return merged
