"""
Job to resolve a file of extracted shelf items.

Reads the raw item records a vision model produced for one shelf photo
and runs them through the shelf pipeline. The report is printed as JSON.

Usage:
    python -m shelfresolver.jobs.resolve_items items.json \
        --user-id u1 --shelf-id s1 --shelf-type books
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from shelfresolver.db.database import async_session_factory, init_db
from shelfresolver.models.outcome import PipelineReport
from shelfresolver.providers.registry import build_default_registry
from shelfresolver.services.shelf_pipeline import ShelfPipeline

logger = logging.getLogger(__name__)


def load_items(path: Path) -> list[dict[str, Any]]:
    """
    Load raw item records from a JSON file.

    Accepts a bare list or an object with an "items" list.

    Raises:
        ValueError: If the file does not contain a list of items.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        msg = f"{path} does not contain a list of items"
        raise ValueError(msg)
    return data


async def resolve_items(
    items: list[dict[str, Any]],
    user_id: str,
    shelf_id: str,
    shelf_type: str,
    enable_second_pass: bool | None = None,
    create_tables: bool = False,
) -> PipelineReport:
    """
    Run the shelf pipeline once over raw item records.

    Args:
        items: Raw records as returned by the vision model
        user_id: Owner of the shelf
        shelf_id: Shelf the items were photographed on
        shelf_type: Free-text shelf type used for provider routing
        enable_second_pass: Override for the AI second pass feature flag
        create_tables: Create missing tables before running

    Returns:
        The pipeline report
    """
    if create_tables:
        await init_db()

    async with build_default_registry(enable_second_pass=enable_second_pass) as registry:
        pipeline = ShelfPipeline(registry, async_session_factory)
        report = await pipeline.run(user_id, shelf_id, shelf_type, items)

    logger.info("Resolved %d items: %s", len(report.outcomes), report.summary)
    return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resolve extracted shelf items")
    parser.add_argument("items_file", type=Path, help="JSON file of raw item records")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--shelf-id", required=True)
    parser.add_argument(
        "--shelf-type", required=True, help='e.g. "books", "Blu-ray", "TV series", "PS2"'
    )
    second_pass = parser.add_mutually_exclusive_group()
    second_pass.add_argument(
        "--second-pass",
        dest="enable_second_pass",
        action="store_true",
        default=None,
        help="Run the AI second pass for unresolved items",
    )
    second_pass.add_argument(
        "--no-second-pass",
        dest="enable_second_pass",
        action="store_false",
        help="Skip the AI second pass",
    )
    parser.add_argument(
        "--create-tables", action="store_true", help="Create missing tables first"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for resolving an items file."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)

    try:
        items = load_items(args.items_file)
    except (OSError, ValueError) as e:
        logger.error("Could not read %s: %s", args.items_file, e)
        return 1

    report = asyncio.run(
        resolve_items(
            items,
            user_id=args.user_id,
            shelf_id=args.shelf_id,
            shelf_type=args.shelf_type,
            enable_second_pass=args.enable_second_pass,
            create_tables=args.create_tables,
        )
    )
    json.dump(report.to_dict(), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
