"""Discovery session commands: discover, scrape, finalize and session-status."""

from __future__ import annotations

import argparse
import logging

from src.cli.context import print_json
from src.pipeline.builder import build_pipeline
from src.pipeline.phases import InvalidRequest, NotFound

logger = logging.getLogger(__name__)


def add_discover_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "discover", help="Phase 1: discover candidate article URLs for an organization"
    )
    parser.add_argument("organization_id", help="Organization ID")
    parser.add_argument(
        "--news-url",
        dest="news_url",
        default=None,
        help="Override the organization's news page URL",
    )
    parser.add_argument(
        "--url",
        dest="manual_urls",
        action="append",
        default=None,
        help="Use this URL instead of discovery (repeatable)",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw result")
    parser.set_defaults(func=handle_discover_command)
    return parser


def add_scrape_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "scrape", help="Phase 2: scrape the selected URLs of a discovery session"
    )
    parser.add_argument("session_id", help="Discovery session ID")
    parser.add_argument(
        "--select",
        dest="url_ids",
        action="append",
        default=None,
        help="Discovered URL ID to select before scraping (repeatable)",
    )
    parser.add_argument(
        "--all",
        dest="select_all",
        action="store_true",
        help="Select every pending URL",
    )
    parser.add_argument(
        "--use-jobs",
        dest="use_jobs",
        action="store_true",
        help="Use the asynchronous extraction job API",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw result")
    parser.set_defaults(func=handle_scrape_command)
    return parser


def add_finalize_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "finalize", help="Phase 3: turn scraped content into articles"
    )
    parser.add_argument("session_id", help="Discovery session ID")
    parser.add_argument(
        "--content",
        dest="content_ids",
        action="append",
        default=None,
        help="Scraped content ID to finalize (repeatable)",
    )
    parser.add_argument(
        "--all",
        dest="select_all",
        action="store_true",
        help="Finalize all scraped content of the session",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw result")
    parser.set_defaults(func=handle_finalize_command)
    return parser


def add_session_status_parser(
    subparsers: argparse._SubParsersAction,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "session-status", help="Show a discovery session or an organization's sessions"
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--session", dest="session_id", help="Discovery session ID")
    group.add_argument(
        "--organization", dest="organization_id", help="List sessions for an organization"
    )
    parser.add_argument("--json", action="store_true", help="Print the raw result")
    parser.set_defaults(func=handle_session_status_command)
    return parser


def handle_discover_command(args) -> int:
    try:
        result = build_pipeline().start_discovery(
            args.organization_id,
            news_url=args.news_url,
            manual_urls=args.manual_urls,
        )
    except (NotFound, InvalidRequest) as exc:
        print(f"❌ {exc}")
        return 1

    if args.json:
        print_json(result)
    elif result["success"]:
        print(f"✅ Session {result['sessionId']} ({result['status']})")
        print(
            f"   {result['totalUrls']} URLs "
            f"({result['newsCount']} news, {result['postCount']} posts)"
        )
        for item in result["urls"]:
            print(f"   [{item['urlType']}] {item['id']}  {item['url']}")
    else:
        print(f"❌ Discovery failed for session {result['sessionId']}: {result['error']}")
    return 0 if result["success"] else 1


def handle_scrape_command(args) -> int:
    pipeline = build_pipeline(use_jobs=args.use_jobs)
    try:
        if args.url_ids:
            pipeline.select_urls(args.session_id, args.url_ids)
        result = pipeline.scrape_session(args.session_id, select_all=args.select_all)
    except (NotFound, InvalidRequest) as exc:
        print(f"❌ {exc}")
        return 1

    if args.json:
        print_json(result)
    elif result["success"]:
        print(
            f"✅ Scraped {result['scrapedCount']} of {result['totalProcessed']} URLs "
            f"({result['failedCount']} failed); session is {result['status']}"
        )
    else:
        print(f"❌ {result['error']}; session is {result['status']}")
    return 0 if result["success"] else 1


def handle_finalize_command(args) -> int:
    try:
        result = build_pipeline().finalize_session(
            args.session_id,
            content_ids=args.content_ids,
            select_all=args.select_all,
        )
    except (NotFound, InvalidRequest) as exc:
        print(f"❌ {exc}")
        return 1

    if args.json:
        print_json(result)
    else:
        print(f"✅ {result['message']}")
        for title in result["createdArticles"]:
            print(f"   + {title}")
        for title in result["updatedArticles"]:
            print(f"   ~ {title}")
        for error in result["errors"]:
            print(f"   ! {error}")
    return 0 if not result["failedCount"] else 1


def handle_session_status_command(args) -> int:
    pipeline = build_pipeline()
    try:
        if args.session_id:
            result = pipeline.get_session(args.session_id)
        else:
            result = pipeline.list_sessions(args.organization_id)
    except NotFound as exc:
        print(f"❌ {exc}")
        return 1

    if args.json:
        print_json(result)
        return 0

    sessions = [result["session"]] if "session" in result else result["sessions"]
    if not sessions:
        print("No discovery sessions found")
    for session in sessions:
        print(
            f"{session['id']}  {session['status']:<16} "
            f"{session['processedUrls']}/{session['totalUrls']} processed, "
            f"{session['selectedUrls']} selected  {session['newsUrl']}"
        )
        if session.get("errorMessage"):
            print(f"   error: {session['errorMessage']}")
    return 0
