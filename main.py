#!/usr/bin/env python3
"""
Permit Portal Resolver — Command Line
======================================

Usage:
    python main.py resolve 4805000 [--force]         # Interactive tier cascade
    python main.py seed [--county 48453]             # Queue search jobs
    python main.py endpoints 48453                   # Classify crawl endpoints for a county
    python main.py sweep verify [--limit 25]         # search|crawl|parse|verify|freshness|reprocess
    python main.py review [--limit 20]               # Records awaiting review
    python main.py approve 42 [--portal-url URL]     # Approve a record
    python main.py reject 42 [--manual-info-url URL] # Reject (or confirm offline)
    python main.py usage                             # Expensive-tier usage

Configuration comes from the environment (or a .env file): DATABASE_URL,
OPENAI_API_KEY, CONFIDENCE_THRESHOLD, DAILY_AI_CAP, BATCH_SIZE, ...
"""

from __future__ import annotations

import argparse
import logging
import sys

from permit_portal.config import load_settings
from permit_portal.context import build_context
from permit_portal.exceptions import PortalDiscoveryError
from permit_portal.models import ResolutionResult, ReviewOutcome, ReviewOverrides, SweepReport, Tier
from permit_portal.pipeline import PortalPipeline, SweepKind
from permit_portal.review import usage_report


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72

_TIER_COLORS = {
    Tier.CACHE: _CYAN,
    Tier.OFFLINE: _YELLOW,
    Tier.CHEAP: _GREEN,
    Tier.EXPENSIVE: _GREEN,
    Tier.NONE: _RED,
}


# ─── Pretty Printers ────────────────────────────────────────────────


def print_resolution(result: ResolutionResult) -> int:
    color = _TIER_COLORS.get(result.status, _RESET)
    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  PORTAL RESOLUTION  {result.geoid}{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Tier:        {color}{_BOLD}{result.status.value}{_RESET}")
    print(f"  Portal:      {result.portal_url or '(none)'}")
    if result.manual_info_url:
        print(f"  Manual info: {result.manual_info_url}")
    print(f"  Vendor:      {result.vendor_type}")
    print(f"  Submission:  {result.submission_method.value}")
    if result.record_id is not None:
        print(f"  Record:      {_DIM}#{result.record_id}{_RESET}")
    if result.notes:
        print(f"  Notes:       {result.notes}")
    print(f"{'=' * _WIDTH}\n")
    return 0 if result.status is not Tier.NONE else 1


def print_sweep(report: SweepReport, verbose: bool = False) -> int:
    color = _GREEN if report.failed == 0 else _YELLOW
    print(f"\n  {_BOLD}{report.kind.upper()}{_RESET}  processed={report.processed}  "
          f"{color}ok={report.succeeded}  failed={report.failed}{_RESET}")
    if verbose:
        for detail in report.details:
            print(f"    {_DIM}{detail}{_RESET}")
    print()
    return 0


def print_review(outcome: ReviewOutcome) -> int:
    record = outcome.record
    print(f"\n  {_BOLD}{outcome.action.value.upper()}{_RESET}  record #{record.id} ({record.jurisdiction_geoid})")
    print(f"    portal:     {record.portal_url or '(none)'}")
    print(f"    manual:     {record.manual_info_url or '(none)'}")
    print(f"    submission: {record.submission_method.value}")
    if outcome.invalidated_ids:
        print(f"    {_DIM}invalidated: {', '.join(str(i) for i in outcome.invalidated_ids)}{_RESET}")
    print()
    return 0


# ─── Argument Parsing ────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="permit-portal", description="Permit portal resolution pipeline")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging and full sweep details")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("resolve", help="Resolve one jurisdiction")
    p.add_argument("geoid")
    p.add_argument("--force", action="store_true", help="Skip the cache")

    p = sub.add_parser("seed", help="Queue search jobs")
    p.add_argument("--county", help="Only this county and its places")

    p = sub.add_parser("endpoints", help="Classify a county's candidates into crawl endpoints")
    p.add_argument("county")

    p = sub.add_parser("sweep", help="Run one batch sweep")
    p.add_argument("kind", choices=[k.value for k in SweepKind])
    p.add_argument("--limit", type=int)
    p.add_argument("--offset", type=int, default=0, help="Start offset (reprocess)")
    p.add_argument("--include-errors", action="store_true", help="Re-pick errored search jobs")

    p = sub.add_parser("review", help="List records awaiting review")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--offset", type=int, default=0)

    for name in ("approve", "reject"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a record")
        p.add_argument("record_id", type=int)
        p.add_argument("--portal-url")
        p.add_argument("--manual-info-url")
        p.add_argument("--vendor-type")
        p.add_argument("--notes")

    sub.add_parser("usage", help="Expensive-tier usage")
    return parser


# ─── Main ────────────────────────────────────────────────────────────


def run(args: argparse.Namespace, pipeline: PortalPipeline) -> int:
    if args.command == "resolve":
        return print_resolution(pipeline.resolve(args.geoid, force_refresh=args.force))
    if args.command == "seed":
        return print_sweep(pipeline.seed(args.county), args.verbose)
    if args.command == "endpoints":
        return print_sweep(pipeline.detect_endpoints(args.county), args.verbose)
    if args.command == "sweep":
        report = pipeline.sweep(
            SweepKind(args.kind), limit=args.limit, offset=args.offset, include_errors=args.include_errors
        )
        return print_sweep(report, args.verbose)
    if args.command == "review":
        records = pipeline.review.list_pending(limit=args.limit, offset=args.offset)
        if not records:
            print("\n  Nothing awaiting review.\n")
        for r in records:
            print(f"  #{r.id:<6} {r.jurisdiction_geoid:<10} {r.submission_method.value:<13} "
                  f"{r.vendor_type:<18} {r.portal_url or r.manual_info_url or '(none)'}")
        return 0
    if args.command in ("approve", "reject"):
        overrides = ReviewOverrides(
            portal_url=args.portal_url,
            manual_info_url=args.manual_info_url,
            vendor_type=args.vendor_type,
            notes=args.notes,
        )
        action = pipeline.approve if args.command == "approve" else pipeline.reject
        return print_review(action(args.record_id, overrides))
    if args.command == "usage":
        usage = usage_report(pipeline.ctx)
        print(f"\n  Expensive tier today: {usage.today}/{usage.limit} ({usage.remaining} remaining)")
        for row in usage.last14:
            print(f"    {_DIM}{row['day']}  {row['count']}{_RESET}")
        print()
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    pipeline = PortalPipeline(build_context(load_settings()))
    try:
        exit_code = run(args, pipeline)
    except PortalDiscoveryError as e:
        print(f"\n  {_RED}{_BOLD}{e.code}{_RESET}  {e}\n", file=sys.stderr)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
