"""Bounded-concurrency batch enrichment with skip-if-present and non-destructive merge."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, Sequence

from geocadastre.common.config_loader import EnrichmentSettings
from geocadastre.common.errors import MergeDataLossError, PipelineError
from geocadastre.common.logging import log_event
from geocadastre.common.models import GeoPoint, PlotRecord
from geocadastre.common.time_utils import elapsed_ms
from geocadastre.pipeline.merge import ResultAggregator
from geocadastre.pipeline.translate import NullTranslator, Translator, apply_translation

# Field whose absence marks a stored category as a failed lookup.
RESULT_KEY_FIELDS = {
    "cadastral": "cadastral_reference",
    "zoning": "label",
    "municipality": "name",
}
FAILED_MARKERS = (None, "", "N/A")
TRANSLATABLE_CATEGORIES = {"zoning"}

LOGGER = logging.getLogger(__name__)


class BatchState(str, Enum):
    FETCH_BATCH = "FETCH_BATCH"
    FILTER_NEEDS_ENRICHMENT = "FILTER_NEEDS_ENRICHMENT"
    DISPATCH_WORKERS = "DISPATCH_WORKERS"
    ADVANCE_OFFSET = "ADVANCE_OFFSET"
    DONE = "DONE"
    STOPPED = "STOPPED"


TERMINAL_STATES = {BatchState.DONE, BatchState.STOPPED}


class PlotSource(Protocol):
    def fetch_batch(self, offset: int, limit: int) -> list[PlotRecord]: ...


class EnrichmentStore(Protocol):
    def get_existing_enrichment_data_map(self, ids: Sequence[str]) -> dict[str, dict[str, Any]]: ...

    def upsert_enriched_plot(self, plot: PlotRecord, document: dict[str, Any]) -> Any: ...


class Resolver(Protocol):
    def resolve(self, point: GeoPoint, category: str) -> dict[str, Any]: ...


@dataclass
class RunSummary:
    state: BatchState = BatchState.FETCH_BATCH
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "batches": self.batches,
        }


def is_failed_result(category: str, payload: Any) -> bool:
    if not isinstance(payload, Mapping):
        return True
    return payload.get(RESULT_KEY_FIELDS.get(category, "label")) in FAILED_MARKERS


def needs_enrichment(
    document: Mapping[str, Any] | None,
    category: str,
    *,
    force_refresh: bool = False,
    retry_failed: bool = False,
) -> bool:
    existing = (document or {}).get(category)
    if retry_failed:
        return existing is not None and is_failed_result(category, existing)
    if force_refresh:
        return True
    return existing is None


class EnrichmentOrchestrator:
    """Runs one category over the point source, batch by batch.

    FETCH_BATCH -> FILTER_NEEDS_ENRICHMENT -> DISPATCH_WORKERS ->
    ADVANCE_OFFSET -> FETCH_BATCH, ending in DONE when the source is exhausted
    or STOPPED when the dry-run cap is reached. Per-item failures are counted
    and logged; only a source read failure escapes ``run``.
    """

    def __init__(
        self,
        source: PlotSource,
        store: EnrichmentStore,
        resolver: Resolver,
        settings: EnrichmentSettings,
        *,
        aggregator: ResultAggregator | None = None,
        translator: Translator | None = None,
        sleep: Callable[[float], None] = time.sleep,
        run_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.resolver = resolver
        self.settings = settings
        self.aggregator = aggregator or ResultAggregator()
        self.translator = translator or NullTranslator()
        self.sleep = sleep
        self.run_id = run_id
        self.logger = logger or LOGGER
        self._lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def category(self) -> str:
        return self.settings.category

    def _log(self, message: str, *, level: int = logging.INFO, **fields: Any) -> None:
        log_event(self.logger, message, level=level, run_id=self.run_id, category=self.category, **fields)

    def run(self) -> RunSummary:
        summary = RunSummary()
        state = BatchState.FETCH_BATCH
        offset = 0
        batch: list[PlotRecord] = []
        pending: list[tuple[PlotRecord, dict[str, Any]]] = []
        self._stop.clear()

        while state not in TERMINAL_STATES:
            self._log(f"state {state.value} at offset {offset}", stage=state.value, event="BATCH_STATE")
            if state is BatchState.FETCH_BATCH:
                batch = self.source.fetch_batch(offset, self.settings.batch_size)
                if not batch:
                    state = BatchState.DONE
                    continue
                summary.batches += 1
                state = BatchState.FILTER_NEEDS_ENRICHMENT
            elif state is BatchState.FILTER_NEEDS_ENRICHMENT:
                pending = self.filter_batch(batch)
                summary.skipped += len(batch) - len(pending)
                state = BatchState.DISPATCH_WORKERS
            elif state is BatchState.DISPATCH_WORKERS:
                self.dispatch(pending, summary)
                state = BatchState.ADVANCE_OFFSET
            elif state is BatchState.ADVANCE_OFFSET:
                offset += len(batch)
                if self._stop.is_set():
                    state = BatchState.STOPPED
                elif len(batch) < self.settings.batch_size:
                    state = BatchState.DONE
                else:
                    state = BatchState.FETCH_BATCH

        summary.state = state
        self._log(
            f"run finished in {state.value}: {summary.processed} processed, {summary.skipped} skipped, "
            f"{summary.failed} failed",
            stage=state.value,
            event="RUN_END",
            status="ok" if not summary.failed else "partial",
        )
        return summary

    def filter_batch(self, batch: Sequence[PlotRecord]) -> list[tuple[PlotRecord, dict[str, Any]]]:
        existing = self.store.get_existing_enrichment_data_map([plot.id for plot in batch])
        pending = []
        for plot in batch:
            document = existing.get(plot.id) or {}
            if needs_enrichment(
                document,
                self.category,
                force_refresh=self.settings.force_refresh,
                retry_failed=self.settings.retry_failed,
            ):
                pending.append((plot, document))
        self._log(
            f"{len(pending)} of {len(batch)} plots need {self.category}",
            stage=BatchState.FILTER_NEEDS_ENRICHMENT.value,
            event="BATCH_FILTERED",
            status="ok",
        )
        return pending

    def dispatch(self, pending: Sequence[tuple[PlotRecord, dict[str, Any]]], summary: RunSummary) -> None:
        if not pending:
            return
        next_index = 0

        def claim() -> int | None:
            nonlocal next_index
            with self._lock:
                if self._stop.is_set() or next_index >= len(pending):
                    return None
                idx = next_index
                next_index += 1
                return idx

        def worker() -> None:
            while True:
                idx = claim()
                if idx is None:
                    return
                plot, document = pending[idx]
                ok = self.process_item(plot, document)
                with self._lock:
                    if ok:
                        summary.processed += 1
                        cap = self.settings.max_items
                        if cap is not None and summary.processed >= cap:
                            self._stop.set()
                    else:
                        summary.failed += 1
                if self._stop.is_set():
                    return
                if self.settings.inter_item_delay_ms > 0:
                    self.sleep(self.settings.inter_item_delay_s)

        workers = max(1, min(self.settings.concurrency, len(pending)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(worker) for _ in range(workers)]
            for future in futures:
                future.result()

    def process_item(self, plot: PlotRecord, document: dict[str, Any]) -> bool:
        """Resolve, merge and persist one plot; returns False on a per-item failure."""
        started = time.monotonic()
        try:
            payload = self.resolver.resolve(plot.point(), self.category)
            if self.settings.translate and self.category in TRANSLATABLE_CATEGORIES:
                payload = apply_translation(
                    payload,
                    self.translator,
                    target_lang=self.settings.translate_target_lang,
                    logger=self.logger,
                )
            merged = self.aggregator.merge(document, self.category, payload)
            if self.settings.dry_run:
                self._log(
                    f"dry run: would persist {self.category} for plot {plot.id}",
                    plot_id=plot.id,
                    event="DRY_RUN_ITEM",
                    status="skipped",
                )
            else:
                self.store.upsert_enriched_plot(plot, merged)
        except MergeDataLossError as exc:
            self._log(
                f"merge for plot {plot.id} would drop keys {exc.missing_keys}; not persisted",
                level=logging.ERROR,
                plot_id=plot.id,
                event="MERGE_DATA_LOSS",
                status="error",
                error_code=exc.error_code,
            )
            return False
        except PipelineError as exc:
            self._log(
                f"plot {plot.id} failed: {exc}",
                level=logging.WARNING,
                plot_id=plot.id,
                event="ITEM_FAILED",
                status="error",
                error_code=exc.error_code,
            )
            return False
        except Exception as exc:
            self._log(
                f"unexpected failure for plot {plot.id}: {exc}",
                level=logging.ERROR,
                plot_id=plot.id,
                event="ITEM_FAILED",
                status="error",
                error_code="UNEXPECTED_ERROR",
            )
            return False

        self._log(
            f"plot {plot.id} enriched with {self.category}",
            plot_id=plot.id,
            event="ITEM_DONE",
            status="ok" if payload.get("feature_count") else "empty",
            duration_ms=elapsed_ms(started),
            feature_count=payload.get("feature_count"),
        )
        return True
