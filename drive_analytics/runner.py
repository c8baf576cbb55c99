"""
Command-line runner for drive-analytics.

Commands:
1. fetch: download the samples of one or more sessions, optionally scoped
   to a polygon, and export them (plus hand-overs) to CSV
2. neighbors: resolve neighbour cells and PCI collisions of sessions
3. box: merged per-operator box-plot summaries of a metric

Usage:
    python -m drive_analytics.runner fetch --sessions 101 102 --output out/samples.csv

    # Scope to an area drawn on the map
    python -m drive_analytics.runner fetch --sessions 101 --polygon-wkt "POLYGON((...))"

    # Neighbour and collision report
    python -m drive_analytics.runner neighbors --sessions 101 102 --output out/neighbors.csv

    # RSRP distribution per operator
    python -m drive_analytics.runner box --metric rsrp
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from drive_analytics.analysis.aggregation import to_dataframe
from drive_analytics.core.geometry import polygons_from_wkt, route_length_m
from drive_analytics.core.stats import summarize_samples
from drive_analytics.core.transitions import detect_transitions
from drive_analytics.outputs.csv_export import (
    export_neighbors_csv,
    export_samples_csv,
    export_stats_csv,
    export_transitions_csv,
)
from drive_analytics.service import DriveAnalyticsService
from drive_analytics.utils.config import PipelineConfig, get_default_config, load_config
from drive_analytics.utils.error_handling import user_message
from drive_analytics.utils.exceptions import DriveAnalyticsError
from drive_analytics.utils.logging_config import configure_logging, get_logger

logger = get_logger(__name__)

SUMMARY_METRICS = ['rsrp', 'rsrq', 'sinr', 'dl_tpt', 'ul_tpt', 'mos']


async def run_fetch(
    service: DriveAnalyticsService,
    sessions: List[str],
    polygon_wkt: Optional[str] = None,
    output: Optional[Path] = None,
) -> int:
    """Fetch samples and export them; returns the number of samples kept."""
    polygons = polygons_from_wkt(polygon_wkt) if polygon_wkt else None
    result = await service.fetch_samples(sessions, polygons=polygons)
    if result is None:
        logger.warning("fetch_superseded", sessions=sessions)
        return 0

    logger.info(
        "samples_ready",
        samples=len(result.samples),
        total_count=result.total_count,
        pages=result.pages_fetched,
        partial=result.partial,
        route_km=round(route_length_m(result.samples) / 1000, 2),
        outside_polygons=(result.unfiltered_count - len(result.samples))
        if result.unfiltered_count is not None else 0,
    )
    for metric, stats in summarize_samples(result.samples, SUMMARY_METRICS).items():
        if stats:
            logger.info("metric_summary", metric=metric, **stats)

    if output is not None:
        export_samples_csv(result.samples, output)
        transitions = detect_transitions(result.samples)
        export_transitions_csv(transitions, output.with_name(f"{output.stem}_handovers.csv"))
    return len(result.samples)


async def run_neighbors(
    service: DriveAnalyticsService,
    sessions: List[str],
    output: Optional[Path] = None,
) -> int:
    """Resolve neighbours; returns the number of PCI collisions found."""
    resolution = await service.resolve_neighbors(sessions)
    if resolution is None:
        return 0
    for collision in resolution.collisions:
        logger.info("pci_collision", pci=collision.pci, locations=collision.location_count)
    if output is not None:
        export_neighbors_csv(resolution, output)
    return resolution.stats.collisions


async def run_box(
    service: DriveAnalyticsService,
    metric: str,
    output: Optional[Path] = None,
) -> int:
    """Print per-operator box summaries; returns the number of operators."""
    summaries = await service.box_summary(metric)
    if summaries:
        print(to_dataframe(summaries).to_string(index=False))
    else:
        logger.warning("no_box_data", metric=metric)
    if output is not None:
        export_stats_csv([s.to_dict() for s in summaries], output)
    return len(summaries)


async def run_command(args: argparse.Namespace, config: PipelineConfig) -> int:
    async with DriveAnalyticsService(config) as service:
        if args.load_thresholds:
            await service.load_thresholds()
        if args.command == 'fetch':
            await run_fetch(service, args.sessions, args.polygon_wkt, args.output)
        elif args.command == 'neighbors':
            await run_neighbors(service, args.sessions, args.output)
        elif args.command == 'box':
            await run_box(service, args.metric, args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='drive-analytics',
        description='Drive Analytics - drive-test telemetry retrieval and analysis',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Export the samples of two sessions
  drive-analytics fetch --sessions 101 102 --output out/samples.csv

  # PCI collisions across sessions
  drive-analytics neighbors --sessions 101 102

  # Box-plot summary per operator
  drive-analytics box --metric rsrq
        """
    )

    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='YAML config file (default: built-in defaults)'
    )

    parser.add_argument(
        '--log-level',
        default=None,
        help='Override the configured log level'
    )

    parser.add_argument(
        '--load-thresholds',
        action='store_true',
        help='Load saved threshold settings before running'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    fetch = subparsers.add_parser('fetch', help='Fetch and export session samples')
    fetch.add_argument('--sessions', nargs='+', required=True, help='Session ids')
    fetch.add_argument('--polygon-wkt', default=None, help='Keep only samples inside this POLYGON/MULTIPOLYGON')
    fetch.add_argument('--output', type=Path, default=None, help='Samples CSV path')

    neighbors = subparsers.add_parser('neighbors', help='Resolve neighbours and PCI collisions')
    neighbors.add_argument('--sessions', nargs='+', required=True, help='Session ids')
    neighbors.add_argument('--output', type=Path, default=None, help='Neighbours CSV path')

    box = subparsers.add_parser('box', help='Per-operator box-plot summary of a metric')
    box.add_argument('--metric', default='rsrp', help='Metric (default: rsrp)')
    box.add_argument('--output', type=Path, default=None, help='Summary CSV path')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config) if args.config else get_default_config()
    except (FileNotFoundError, DriveAnalyticsError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(log_level=args.log_level or config.log_level, json_output=config.json_logs)

    try:
        return asyncio.run(run_command(args, config))
    except DriveAnalyticsError as e:
        logger.error("command_failed", command=args.command, error=str(e))
        print(user_message(e), file=sys.stderr)
        return 1
    except Exception as e:
        logger.error("Execution failed", error=str(e), exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
