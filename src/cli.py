"""Command line entry point.

    python -m src.cli serve
    python -m src.cli dump-history --start-date 2024-01-01 --output-file history.om

``dump-history`` runs one backfill into a fresh store and writes it, with
sample timestamps, in the OpenMetrics format that
``promtool tsdb create-blocks-from openmetrics`` imports.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import date, timedelta
from pathlib import Path

import uvicorn

from src.config import DEFAULT_HISTORY_DAYS, get_settings, yesterday
from src.exporter.runtime import ExporterRuntime
from src.main import configure_logging

logger = logging.getLogger("fitbit_exporter.cli")

DEFAULT_OUTPUT_FILE = "fitbit_historical_metrics.prom"


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM-DD date: {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fitbit-exporter",
        description="Export Fitbit data as Prometheus metrics",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("serve", help="Run the HTTP exporter (polling, /metrics, /health)")

    dump = commands.add_parser(
        "dump-history", help="Backfill a date range and write it to a file with timestamps"
    )
    dump.add_argument(
        "--start-date", type=_iso_date, default=None,
        help=f"First date to export (default: {DEFAULT_HISTORY_DAYS} days before yesterday)",
    )
    dump.add_argument(
        "--end-date", type=_iso_date, default=None,
        help="Last date to export, inclusive (default: yesterday)",
    )
    dump.add_argument(
        "--output-file", type=Path, default=Path(DEFAULT_OUTPUT_FILE),
        help=f"Destination file (default: {DEFAULT_OUTPUT_FILE})",
    )
    return parser


def history_window(start: date | None, end: date | None) -> tuple[date, date]:
    """Resolve the dump-history range, applying the defaults."""
    end = end or yesterday()
    start = start or end - timedelta(days=DEFAULT_HISTORY_DAYS)
    if start > end:
        raise ValueError(f"start date {start} is after end date {end}")
    return start, end


async def dump_history(runtime: ExporterRuntime, start: date, end: date, output: Path) -> int:
    """Backfill ``[start, end]`` and write the store; returns the series count."""
    try:
        report = await runtime.backfill.run(start, end)
    finally:
        await runtime.shutdown()

    for skipped in report.skipped:
        logger.warning(
            "Skipped %s %s..%s: %s",
            skipped.resource, skipped.start_date, skipped.end_date, skipped.reason,
        )
    if report.aborted:
        logger.error("Backfill aborted: %s", report.aborted)

    output.write_bytes(runtime.render_metrics(include_timestamps=True, openmetrics=True))
    logger.info("Wrote %d series to %s", len(runtime.store), output)
    return len(runtime.store)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "src.main:app",
            host=settings.listen_host,
            port=settings.listen_port,
            log_level=settings.log_level.lower(),
        )
        return 0

    try:
        start, end = history_window(args.start_date, args.end_date)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    runtime = ExporterRuntime.from_settings(settings)
    asyncio.run(dump_history(runtime, start, end, args.output_file))
    return 1 if runtime.backfill.last_report and runtime.backfill.last_report.aborted else 0


if __name__ == "__main__":
    raise SystemExit(main())
