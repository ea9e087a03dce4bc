#!/usr/bin/env python3
"""
Archtivy Matches — Match Manager: operator CLI

Subcommands:

  init-db   — Create the image_signals and matches tables if missing.
  process   — Embed, tag and store every image of one project or product.
  compute   — Score candidate products against a project and upsert matches.
              Without product ids, candidates are discovered.
  rebuild   — Recompute matches for many projects (default: all with signals).
  show      — Print stored matches for a project, product or image.

Usage examples
--------------
  python scripts/match_manager.py init-db
  python scripts/match_manager.py process project 6f1c...
  python scripts/match_manager.py compute 6f1c... prod-1 prod-2 --timeout 60
  python scripts/match_manager.py compute 6f1c...
  python scripts/match_manager.py rebuild
  python scripts/match_manager.py show project 6f1c... --tier verified --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

# Ensure the project root is importable
sys.path.insert(0, ".")

from archtivy_matches.config import ProviderConfig, get_settings
from archtivy_matches.database import get_engine, get_session_factory, init_models
from archtivy_matches.logging_config import configure_logging
from archtivy_matches.services.attribute_service import AttributeExtractor
from archtivy_matches.services.embedding_service import EmbeddingProvider
from archtivy_matches.services.listing_store import HttpListingStore
from archtivy_matches.services.matching_service import MATCH_MIN_SCORE, MatchingService
from archtivy_matches.services.pipeline_service import ImagePipeline
from archtivy_matches.services.query_service import MatchQueryService
from archtivy_matches.services.signal_store import ImageSignalStore


def _banner(title: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {title}")
    print(f"{'=' * 60}")


# ──────────────────────────────────────────────────────────────────────────────
# Subcommands
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_init_db(args: argparse.Namespace) -> None:
    await init_models()
    print("Tables ready.")


async def cmd_process(args: argparse.Namespace) -> None:
    settings = get_settings()
    provider_config = ProviderConfig.from_settings(settings)
    listing_store = HttpListingStore.from_settings(settings)
    pipeline = ImagePipeline(
        embedding_provider=EmbeddingProvider(provider_config),
        attribute_extractor=AttributeExtractor(provider_config),
        signal_store=ImageSignalStore(settings.EMBEDDING_DIM),
        session_factory=get_session_factory(),
        listing_store=listing_store,
        max_concurrency=settings.PIPELINE_MAX_CONCURRENCY,
    )
    try:
        result = await pipeline.process_listing_images(args.listing_type, args.listing_id)
    finally:
        await listing_store.aclose()

    _banner(f"Processed {args.listing_type} {args.listing_id}")
    print(f"  Images stored: {result.processed}")
    print(f"  Errors:        {len(result.errors)}")
    for error in result.errors:
        print(f"    - {error}")
    print()


async def cmd_compute(args: argparse.Namespace) -> None:
    settings = get_settings()
    listing_store = HttpListingStore.from_settings(settings)
    service = MatchingService(listing_store=listing_store, settings=settings)
    try:
        result = await service.compute_and_upsert_matches(
            args.project_id, args.product_ids or None, timeout=args.timeout
        )
    finally:
        await listing_store.aclose()

    _banner(f"Matches for project {args.project_id}")
    print(f"  Upserted: {result.upserted}")
    print(f"  Errors:   {len(result.errors)}")
    for error in result.errors:
        print(f"    - {error}")
    print()


async def cmd_rebuild(args: argparse.Namespace) -> None:
    settings = get_settings()
    listing_store = HttpListingStore.from_settings(settings)
    service = MatchingService(listing_store=listing_store, settings=settings)
    try:
        result = await service.compute_all_matches(
            args.project_ids or None, timeout=args.timeout
        )
    finally:
        await listing_store.aclose()

    _banner("Rebuilt matches")
    print(f"  Projects: {result.projects_processed}")
    print(f"  Upserted: {result.upserted}")
    print(f"  Errors:   {len(result.errors)}")
    for error in result.errors:
        print(f"    - {error}")
    print()


async def cmd_show(args: argparse.Namespace) -> None:
    settings = get_settings()
    listing_store = HttpListingStore.from_settings(settings)
    service = MatchQueryService(listing_store=listing_store)
    try:
        async with get_session_factory()() as session:
            if args.kind == "project":
                page = await service.get_project_matches(
                    session, args.id, tier=args.tier, limit=args.limit,
                    offset=args.offset, min_score=args.min_score,
                )
                rows, total = page.data, page.total
            elif args.kind == "product":
                page = await service.get_product_matched_projects(
                    session, args.id, tier=args.tier, limit=args.limit,
                    offset=args.offset, min_score=args.min_score,
                )
                rows, total = page.data, page.total
            else:
                rows = await service.get_image_matches(
                    session, args.id, tier=args.tier, limit=args.limit,
                    min_score=args.min_score,
                )
                total = len(rows)
    finally:
        await listing_store.aclose()

    if args.json:
        print(json.dumps(
            {"data": [r.model_dump(mode="json") for r in rows], "total": total},
            indent=2,
        ))
        return

    _banner(f"Matches for {args.kind} {args.id}  (tier={args.tier})")
    print(f"  Total: {total}\n")
    for row in rows:
        counterpart = row.product_id if args.kind == "project" else row.project_id
        if args.kind == "image":
            counterpart = f"{row.project_id} <-> {row.product_id}"
        reasons = ", ".join(f"{r.type}={r.score}" for r in row.reasons)
        print(f"  {row.score:>3}  {row.tier:<9} {counterpart}  [{reasons}]")
    print()


# ──────────────────────────────────────────────────────────────────────────────
# CLI entry point
# ──────────────────────────────────────────────────────────────────────────────

async def _run(handler, args: argparse.Namespace) -> None:
    try:
        await handler(args)
    finally:
        if get_engine.cache_info().currsize:
            await get_engine().dispose()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Archtivy Match Manager — tables, image backfill, scoring and inspection.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available subcommands")

    # ── init-db ───────────────────────────────────────────────────────
    subparsers.add_parser("init-db", help="Create the engine's tables if missing.")

    # ── process ───────────────────────────────────────────────────────
    process_parser = subparsers.add_parser(
        "process",
        help="Embed, tag and store every image of one listing.",
    )
    process_parser.add_argument("listing_type", choices=["project", "product"])
    process_parser.add_argument("listing_id")

    # ── compute ───────────────────────────────────────────────────────
    compute_parser = subparsers.add_parser(
        "compute",
        help="Score candidate products against a project.",
    )
    compute_parser.add_argument("project_id")
    compute_parser.add_argument(
        "product_ids",
        nargs="*",
        help="Candidate products (default: discover from stored signals).",
    )
    compute_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Batch timeout in seconds (default: MATCH_TIMEOUT_SECONDS).",
    )

    # ── rebuild ───────────────────────────────────────────────────────
    rebuild_parser = subparsers.add_parser(
        "rebuild",
        help="Recompute matches for many projects.",
    )
    rebuild_parser.add_argument(
        "project_ids",
        nargs="*",
        help="Projects to recompute (default: every project with stored signals).",
    )
    rebuild_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-project timeout in seconds (default: MATCH_TIMEOUT_SECONDS).",
    )

    # ── show ──────────────────────────────────────────────────────────
    show_parser = subparsers.add_parser("show", help="Print stored matches.")
    show_parser.add_argument("kind", choices=["project", "product", "image"])
    show_parser.add_argument("id")
    show_parser.add_argument("--tier", choices=["all", "possible", "verified"], default="all")
    show_parser.add_argument("--limit", type=int, default=50)
    show_parser.add_argument("--offset", type=int, default=0)
    show_parser.add_argument(
        "--min-score",
        type=int,
        default=MATCH_MIN_SCORE,
        help=f"Hide matches below this score (default: {MATCH_MIN_SCORE}; 0 for audits).",
    )
    show_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Output raw JSON instead of a table.",
    )

    args = parser.parse_args()

    handlers = {
        "init-db": cmd_init_db,
        "process": cmd_process,
        "compute": cmd_compute,
        "rebuild": cmd_rebuild,
        "show": cmd_show,
    }
    if args.command not in handlers:
        parser.print_help()
        sys.exit(1)

    configure_logging(get_settings().LOG_LEVEL)
    asyncio.run(_run(handlers[args.command], args))


if __name__ == "__main__":
    main()
