"""CLI entry point for inspecting and editing quarantined tests."""

import argparse
import asyncio
import json
import logging
import sys
from collections import Counter
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from flake_quarantine.config import QuarantineConfig, load_config
from flake_quarantine.engine import QuarantineEngine
from flake_quarantine.errors import QuarantineError
from flake_quarantine.models.record import TEST_STATUSES, TestRecord

STATUS_SYMBOLS = {
    "passing": "✅",
    "failing": "❌",
    "quarantined": "🚧",
}


def log_records(log: logging.Logger, records: Sequence[TestRecord]) -> None:
    """Log one line per record with its status symbol."""
    for record in records:
        symbol = STATUS_SYMBOLS.get(record.status, "?")
        log.info(
            "%s %s: %s (%d consecutive pass(es))",
            symbol,
            record.id,
            record.status,
            record.consecutive_passes,
        )
        if record.full_description:
            log.info("  Description: %s", record.full_description)


def format_counts(records: Sequence[TestRecord]) -> dict[str, Any]:
    """Format the status tally of a table for JSON output."""
    tally = Counter(record.status for record in records)
    return {
        "total": len(records),
        **{status: tally[status] for status in TEST_STATUSES},
    }


async def show_status(
    engine: QuarantineEngine, *, include_all: bool = False
) -> Sequence[TestRecord]:
    """Return the quarantined records of the table, or every record."""
    records = await engine.fetch_remote()
    if include_all:
        return records
    return [record for record in records if record.quarantined]


async def release_tests(
    engine: QuarantineEngine, test_ids: Sequence[str]
) -> Sequence[TestRecord]:
    """Mark the given quarantined tests as passing and return them."""
    log = logging.getLogger("flake_quarantine")

    records = {record.id: record for record in await engine.fetch_remote()}
    released: list[TestRecord] = []
    for test_id in test_ids:
        record = records.get(test_id)
        if record is None or not record.quarantined:
            log.warning("Test %s is not quarantined, skipping", test_id)
            continue
        released.append(
            record.model_copy(update={"status": "passing", "consecutive_passes": 0})
        )

    if released:
        await engine.write_remote(released)
    return released


async def run(config: QuarantineConfig, command: str, args: argparse.Namespace) -> int:
    """Run a CLI command and return exit code."""
    log = logging.getLogger("flake_quarantine")
    engine = QuarantineEngine.from_config(config)

    try:
        if command == "status":
            records = await show_status(engine, include_all=args.all)
            log_records(log, records)
            print(json.dumps([record.to_item() for record in records], indent=2))
        elif command == "release":
            released = await release_tests(engine, args.test_ids)
            log.info("Released %d test(s)", len(released))
            print(json.dumps([record.id for record in released]))
        elif command == "summary":
            records = await engine.fetch_remote()
            print(json.dumps(format_counts(records), indent=2))
    except QuarantineError as exc:
        log.error(
            "%s failed for table %s on backend %s: %s",
            command,
            engine.table_name,
            engine.backend_type,
            exc,
        )
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Inspect and edit quarantined tests")
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the quarantine YAML/JSON configuration",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="List quarantined tests")
    status_parser.add_argument(
        "--all",
        action="store_true",
        help="List every test status, not only quarantined tests",
    )

    release_parser = subparsers.add_parser(
        "release", help="Release tests from quarantine"
    )
    release_parser.add_argument("test_ids", nargs="+", help="Test ids to release")

    subparsers.add_parser("summary", help="Count test statuses by category")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(args.config)
        exit_code = asyncio.run(run(config, args.command, args))
    except QuarantineError as exc:
        logging.getLogger("flake_quarantine").error("%s", exc)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
