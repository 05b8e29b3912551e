"""Command line entry point for chain load tests.

Usage:
    python -m chainload --mode batch --batches 20 --concurrency 10
    python -m chainload --mode stream --duration 300
    python -m chainload --catalog weights.yaml --skip-discovery --output out.json
"""

import argparse
import asyncio
import dataclasses
import random
import sys

import structlog

from chainload.config import settings
from chainload.engine.catalog import default_catalog, load_catalog
from chainload.engine.engine import MODES, LoadPlan, LoadTestEngine
from chainload.engine.models import RunSummary
from chainload.engine.reporter import ConsoleReporter, JsonFileReporter
from chainload.engine.requester import HttpRequester
from chainload.shared.logging import setup_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chainload",
        description="Adaptive load tester for dual-dialect chain query APIs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="batch",
        help="Main phase: a fixed number of batches, or a timed stream (default: batch).",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=60.0,
        help="Stream mode duration in seconds (default: 60).",
    )
    parser.add_argument(
        "--batches",
        type=int,
        default=10,
        help="Number of batches in batch mode (default: 10).",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Requests per generated batch (default: BATCH_SIZE setting).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of concurrent workers (default: TEST_CONCURRENCY setting).",
    )
    parser.add_argument(
        "--catalog",
        type=str,
        default=None,
        help="YAML file that adds methods or re-weights the default catalog.",
    )
    parser.add_argument(
        "--skip-discovery",
        action="store_true",
        help="Do not discover chain state; requests fall back to latest/empty parameters.",
    )
    parser.add_argument(
        "--skip-scenarios",
        action="store_true",
        help="Skip the progressive scenario sets and run only the main phase.",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write the JSON report to this path instead of REPORT_DIR.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for request sampling.",
    )
    return parser


def plan_from_args(args: argparse.Namespace) -> LoadPlan:
    return LoadPlan(
        mode=args.mode,
        batches=args.batches,
        duration_seconds=args.duration,
        discovery=not args.skip_discovery,
        scenarios=not args.skip_scenarios,
    )


async def async_main(args: argparse.Namespace) -> RunSummary:
    config = settings.engine_config()
    overrides = {}
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if overrides:
        config = dataclasses.replace(config, **overrides)

    catalog = load_catalog(args.catalog) if args.catalog else default_catalog()
    reporters = [
        ConsoleReporter(),
        JsonFileReporter(settings.report_dir, path=args.output),
    ]
    logger.info(
        "load_test_starting",
        base_endpoint=config.base_endpoint,
        evm_endpoint=config.evm_endpoint,
        mode=args.mode,
        concurrency=config.concurrency,
    )
    async with HttpRequester(config) as requester:
        engine = LoadTestEngine(
            config,
            requester,
            catalog=catalog,
            reporters=reporters,
            rng=random.Random(args.seed),
        )
        return await engine.start(plan_from_args(args))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        plan_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    for flag in ("concurrency", "batch_size"):
        value = getattr(args, flag)
        if value is not None and value <= 0:
            parser.error(f"--{flag.replace('_', '-')} must be > 0")
    setup_logging(settings.log_level, json_output=settings.log_json)
    summary = asyncio.run(async_main(args))
    return 1 if summary.total_requests and summary.failed == summary.total_requests else 0


if __name__ == "__main__":
    sys.exit(main())
