"""Bulk scrape command: run the single-URL pipeline over a list of URLs."""

from __future__ import annotations

import argparse
from pathlib import Path

from src.cli.context import print_json
from src.pipeline.builder import build_pipeline
from src.pipeline.phases import DEFAULT_BATCH_DELAY_MS, InvalidRequest, NotFound


def _read_url_file(path: str) -> list[str]:
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.startswith("#")]


def add_bulk_scrape_parser(
    subparsers: argparse._SubParsersAction,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "bulk-scrape", help="Scrape and store a list of article URLs"
    )
    parser.add_argument("organization_id", help="Organization ID")
    parser.add_argument("urls", nargs="*", help="Article URLs")
    parser.add_argument(
        "--file",
        dest="url_file",
        default=None,
        help="Read URLs from a file, one per line",
    )
    parser.add_argument(
        "--concurrency", type=int, default=None, help="URLs scraped at once"
    )
    parser.add_argument(
        "--batch-delay",
        dest="batch_delay",
        type=int,
        default=DEFAULT_BATCH_DELAY_MS,
        help="Delay between batches in milliseconds (default: 2000)",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw result")
    parser.set_defaults(func=handle_bulk_scrape_command)
    return parser


def handle_bulk_scrape_command(args) -> int:
    urls = list(args.urls or [])
    if args.url_file:
        urls.extend(_read_url_file(args.url_file))

    try:
        result = build_pipeline().bulk_scrape(
            args.organization_id,
            urls,
            concurrency=args.concurrency,
            batch_delay_ms=args.batch_delay,
        )
    except (NotFound, InvalidRequest) as exc:
        print(f"❌ {exc}")
        return 1

    if args.json:
        print_json(result)
        return 0

    summary = result["summary"]
    for entry in result["results"]:
        marker = {"success": "✅", "duplicate": "🔁"}.get(entry["status"], "❌")
        print(f"{marker} {entry['url']}: {entry['message']}")
    print()
    print(
        f"Total {summary['total']}: {summary['success']} scraped, "
        f"{summary['duplicate']} duplicate, {summary['error']} failed"
    )
    return 0 if summary["error"] < summary["total"] else 1


def add_process_batches_parser(
    subparsers: argparse._SubParsersAction,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "process-batches", help="Process queued or interrupted URL batches"
    )
    parser.add_argument(
        "batch_ids", nargs="*", help="Batch IDs (default: the oldest ready batches)"
    )
    parser.add_argument(
        "--concurrency", type=int, default=None, help="URLs scraped at once"
    )
    parser.add_argument(
        "--batch-delay",
        dest="batch_delay",
        type=int,
        default=DEFAULT_BATCH_DELAY_MS,
        help="Delay between chunks in milliseconds (default: 2000)",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw result")
    parser.set_defaults(func=handle_process_batches_command)
    return parser


def handle_process_batches_command(args) -> int:
    result = build_pipeline().resume_batches(
        args.batch_ids,
        concurrency=args.concurrency,
        batch_delay_ms=args.batch_delay,
    )
    if args.json:
        print_json(result)
        return 0

    print(result["message"])
    for entry in result["results"]:
        marker = "✅" if entry["status"] == "completed" else "❌"
        name = entry["organizationName"]
        print(f"{marker} {name} ({entry['batchId']}): {entry['message']}")
    summary = result.get("summary")
    if summary:
        print(
            f"{summary['totalSuccessful']} scraped, {summary['totalDuplicates']} "
            f"duplicate, {summary['totalFailed']} failed"
        )
        return 0 if not summary["failedBatches"] else 1
    return 0
