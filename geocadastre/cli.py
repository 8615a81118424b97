"""CLI entrypoint for cadastral and zoning resolution."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from geocadastre.common.config_loader import load_settings_from_env
from geocadastre.common.constants import CATEGORIES, EXIT_HARD_FAIL, EXIT_PARTIAL, EXIT_SUCCESS
from geocadastre.common.errors import PipelineError
from geocadastre.common.http import HttpClient
from geocadastre.common.ids import generate_run_id
from geocadastre.common.logging import build_logger, log_event
from geocadastre.common.models import GeoPoint
from geocadastre.geo.crs import CRSTransformer
from geocadastre.pipeline.orchestrator import EnrichmentOrchestrator
from geocadastre.pipeline.resolver import PointResolver
from geocadastre.pipeline.store import CsvPlotSource, JsonEnrichmentStore
from geocadastre.services.client import ProtocolClient
from geocadastre.services.registry import ServiceRegistry
from geocadastre.services.reverse_geocode import ReverseGeocoder
from geocadastre.services.router import RegionRouter


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("command", choices=["resolve", "enrich"])
    parser.add_argument("--category", default="zoning", choices=list(CATEGORIES))
    parser.add_argument("--lon", type=float, default=None)
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--plots-csv", default=None)
    parser.add_argument("--store", default="./data/enrichment.json")
    parser.add_argument("--run-id", default=None)
    parser.add_argument("--config-dir", default="./config")
    parser.add_argument("--overlay-config-dir", default=None)
    parser.add_argument("--data-dir", default="./data")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARN", "ERROR"])
    return parser.parse_args(argv)


def build_resolver(registry: ServiceRegistry, http_client: HttpClient, logger) -> PointResolver:
    transformer = CRSTransformer()
    client = ProtocolClient(http_client, transformer=transformer, logger=logger)
    geocoder = ReverseGeocoder(http_client, logger=logger)
    router = RegionRouter.with_default_lookups(registry, client, geocoder, logger=logger)
    return PointResolver(registry, router, client, transformer=transformer, geocoder=geocoder, logger=logger)


def run_command(args: argparse.Namespace) -> int:
    run_id = args.run_id or generate_run_id()
    config_dir = Path(args.config_dir)
    overlay_config_dir = Path(args.overlay_config_dir) if args.overlay_config_dir else None
    data_dir = Path(args.data_dir)

    logger = build_logger(run_id, data_dir=data_dir, level=args.log_level)
    registry = ServiceRegistry.from_config_dir(config_dir, overlay_config_dir=overlay_config_dir)

    with HttpClient() as http_client:
        resolver = build_resolver(registry, http_client, logger)

        if args.command == "resolve":
            if args.lon is None or args.lat is None:
                log_event(logger, "resolve needs --lon and --lat", run_id=run_id, event="ARGS_INVALID", status="error")
                return EXIT_HARD_FAIL
            payload = resolver.resolve(GeoPoint.from_values(args.lon, args.lat), args.category)
            print(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))
            return EXIT_SUCCESS if payload.get("feature_count") else EXIT_PARTIAL

        if not args.plots_csv:
            log_event(logger, "enrich needs --plots-csv", run_id=run_id, event="ARGS_INVALID", status="error")
            return EXIT_HARD_FAIL
        settings = load_settings_from_env(args.category)
        orchestrator = EnrichmentOrchestrator(
            CsvPlotSource(Path(args.plots_csv)),
            JsonEnrichmentStore(Path(args.store), logger=logger),
            resolver,
            settings,
            run_id=run_id,
            logger=logger,
        )
        log_event(logger, "enrichment start", run_id=run_id, category=args.category, event="RUN_START", status="ok")
        summary = orchestrator.run()

    print(json.dumps(summary.to_dict(), sort_keys=True))
    if summary.failed:
        return EXIT_PARTIAL
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        return run_command(args)
    except PipelineError:
        return EXIT_HARD_FAIL
    except Exception:
        return EXIT_HARD_FAIL


if __name__ == "__main__":
    raise SystemExit(main())
