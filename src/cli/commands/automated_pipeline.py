"""Run discovery, scraping and finalization for every eligible organization."""

from __future__ import annotations

import argparse

from src.cli.context import print_json
from src.pipeline.builder import build_pipeline


def add_automated_pipeline_parser(
    subparsers: argparse._SubParsersAction,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "automated-pipeline",
        help="Run all phases for organizations with no published articles",
    )
    parser.add_argument(
        "--organization",
        dest="organization_ids",
        action="append",
        default=None,
        help="Limit the run to this organization ID (repeatable)",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw result")
    parser.set_defaults(func=handle_automated_pipeline_command)
    return parser


def handle_automated_pipeline_command(args) -> int:
    result = build_pipeline().run_automated(args.organization_ids)
    if args.json:
        print_json(result)
        return 0

    print(result["message"])
    for org in result["results"]:
        marker = "✅" if org["success"] else "❌"
        print(
            f"{marker} {org['organizationName']}: "
            f"{org['phase1']['urlsDiscovered']} discovered, "
            f"{org['phase2']['articlesScraped']} scraped, "
            f"{org['phase3']['articlesCreated']} created "
            f"({org['duration']} ms)"
        )
        if org["error"]:
            print(f"   error: {org['error']}")

    summary = result["summary"]
    print(
        f"Processed {summary['processed']} organizations: "
        f"{summary['successful']} ok, {summary['failed']} failed, "
        f"{summary['totalArticlesCreated']} articles created"
    )
    return 0 if not summary["failed"] else 1
