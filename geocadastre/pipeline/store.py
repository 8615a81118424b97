"""Point source and enrichment store backed by local files."""

from __future__ import annotations

import csv
import logging
import threading
from pathlib import Path
from typing import Any, Iterable

from geocadastre.common.errors import SourceReadError, StageError
from geocadastre.common.fields import safe_float
from geocadastre.common.fs import read_csv_rows, read_json, write_json
from geocadastre.common.logging import log_event
from geocadastre.common.models import PlotRecord

LONGITUDE_COLUMNS = ("longitude", "lon", "lng")
LATITUDE_COLUMNS = ("latitude", "lat")

LOGGER = logging.getLogger(__name__)


def _first_column(row: dict[str, str], names: Iterable[str]) -> str | None:
    for name in names:
        value = row.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _id_sort_key(plot_id: str) -> tuple[int, int | str]:
    return (0, int(plot_id)) if plot_id.isdigit() else (1, plot_id)


class CsvPlotSource:
    """Plots with coordinates, read from a CSV file in ``id`` order."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> list[PlotRecord]:
        plots = []
        for row in read_csv_rows(self.path):
            plot_id = (row.get("id") or "").strip()
            lon = _first_column(row, LONGITUDE_COLUMNS)
            lat = _first_column(row, LATITUDE_COLUMNS)
            if not plot_id or lon is None or lat is None:
                continue
            plots.append(
                PlotRecord(
                    id=plot_id,
                    longitude=safe_float(lon),
                    latitude=safe_float(lat),
                    country=(row.get("country") or "").strip().upper() or None,
                )
            )
        return sorted(plots, key=lambda plot: _id_sort_key(plot.id))

    def fetch_batch(self, offset: int, limit: int) -> list[PlotRecord]:
        try:
            plots = self._load()
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            raise SourceReadError(f"Cannot read plots from {self.path}: {exc}") from exc
        return plots[offset : offset + limit]


class JsonEnrichmentStore:
    """``{plot_id: {category: payload}}`` in one JSON file.

    Upserts shallow-merge the given document over the stored one, so a write
    for one category never removes another. A single lock serialises all
    access within the process.
    """

    def __init__(self, path: Path, *, logger: logging.Logger | None = None) -> None:
        self.path = path
        self.logger = logger or LOGGER
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        data = read_json(self.path)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def get_existing_enrichment_data_map(self, ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        wanted = [str(plot_id) for plot_id in ids]
        try:
            with self._lock:
                data = self._read_all()
        except (OSError, ValueError) as exc:
            log_event(
                self.logger,
                f"cannot read existing enrichment data: {exc}",
                level=logging.WARNING,
                stage="filter",
                event="STORE_READ_FAILED",
                status="error",
            )
            return {}
        return {plot_id: data[plot_id] for plot_id in wanted if isinstance(data.get(plot_id), dict)}

    def upsert_enriched_plot(self, plot: PlotRecord, document: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            try:
                data = self._read_all()
                stored = dict(data.get(plot.id) or {})
                stored.update(document)
                data[plot.id] = stored
                write_json(self.path, data)
            except (OSError, ValueError, TypeError) as exc:
                raise StageError(f"Cannot persist enrichment for plot {plot.id}: {exc}") from exc
        return stored
