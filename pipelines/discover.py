"""Command-line runner for a single discovery request."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

from leadfinder.config import settings
from leadfinder.services.discovery.service import DiscoveryService

logger = logging.getLogger("pipelines.discover")


async def run_pipeline(
    *,
    query: str,
    total: int,
    origin: str | None,
    output: TextIO,
    service: DiscoveryService | None = None,
) -> str | None:
    """Run one discovery, writing each event as a JSON line.

    Returns the type of the terminal event, or ``None`` if none was emitted.
    """
    owned = service is None
    service = service or DiscoveryService.from_settings()
    terminal: str | None = None
    try:
        async for event in service.discover(query, total, caller_network_origin=origin):
            output.write(event.model_dump_json() + "\n")
            output.flush()
            event_type = getattr(event, "type", None)
            if event_type in ("complete", "error"):
                terminal = event_type
    finally:
        if owned:
            await service.aclose()
    logger.info("discover.finished", extra={"query": query, "terminal": terminal})
    return terminal


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Discover companies, contacts and emails for a query.")
    parser.add_argument("--query", required=True, help='Free-text search, e.g. "law firms in Chicago".')
    parser.add_argument(
        "--total",
        type=int,
        default=settings.default_target_companies,
        help=f"Companies to collect (1-{settings.max_target_companies}).",
    )
    parser.add_argument("--origin", default=None, help="Caller IP used when the query names no location.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Path to a JSONL file; events go to stdout when omitted.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint for the discovery pipeline."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if not 1 <= args.total <= settings.max_target_companies:
        logger.error("--total must be between 1 and %s", settings.max_target_companies)
        return 2

    try:
        if args.output is None:
            terminal = asyncio.run(
                run_pipeline(query=args.query, total=args.total, origin=args.origin, output=sys.stdout)
            )
        else:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            with args.output.open("w", encoding="utf-8") as handle:
                terminal = asyncio.run(
                    run_pipeline(query=args.query, total=args.total, origin=args.origin, output=handle)
                )
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error during discovery: %s", exc)
        return 1
    return 0 if terminal == "complete" else 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
