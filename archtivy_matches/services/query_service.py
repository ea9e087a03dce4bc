"""
Archtivy Matches — Query Layer

Read side of the engine.  Pages come from the Match Store in stable order
(score desc, updated_at desc, counterpart id) and are then checked against
the live listing store so that matches whose project or product has been
deleted are never shown.  Existence filtering runs on the fetched page
only, so a page may be shorter than ``limit``; ``total`` is the count
before filtering.  On SQLite the image containment query is a text
match rechecked after LIMIT, so ``total`` for image reads may also count
rows that cite a different image id.

Reads never raise for store or listing failures: they log and return an
empty page.  Invalid arguments raise ``ValueError``.
"""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from archtivy_matches.models.match import CONFIRMED_TIERS, MatchRecord
from archtivy_matches.schemas.match import MatchPage, MatchRow
from archtivy_matches.services.listing_store import ListingStore
from archtivy_matches.services.match_store import MatchStore
from archtivy_matches.services.matching_service import MATCH_MIN_SCORE

logger = structlog.get_logger("archtivy.query_service")

TIER_FILTERS: tuple[str, ...] = ("all", "possible", "verified")

DEFAULT_PAGE_LIMIT = 50
DEFAULT_IMAGE_LIMIT = 20


def tiers_for_filter(tier: str) -> tuple[str, ...] | None:
    """Stored tiers selected by a public tier filter (``None`` = all)."""
    if tier == "all":
        return None
    if tier == "verified":
        return CONFIRMED_TIERS
    if tier == "possible":
        return ("possible",)
    raise ValueError(f"tier must be one of {TIER_FILTERS}, got {tier!r}")


def _validate_window(limit: int, offset: int = 0, min_score: int = 0) -> None:
    if limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")
    if not 0 <= min_score <= 100:
        raise ValueError(f"min_score must be within 0-100, got {min_score}")


class MatchQueryService:
    """Paginated, tier-filtered, existence-checked match reads."""

    def __init__(
        self,
        listing_store: ListingStore,
        match_store: MatchStore | None = None,
    ) -> None:
        self.listing_store = listing_store
        self.match_store = match_store or MatchStore()

    async def _filter_existing(self, rows: list[MatchRecord]) -> list[MatchRecord]:
        if not rows:
            return rows
        project_ids = list(dict.fromkeys(r.project_id for r in rows))
        product_ids = list(dict.fromkeys(r.product_id for r in rows))
        live_projects = await self.listing_store.listing_exists("project", project_ids)
        live_products = await self.listing_store.listing_exists("product", product_ids)
        return [
            r for r in rows
            if r.project_id in live_projects and r.product_id in live_products
        ]

    async def _page(
        self,
        db_session: AsyncSession,
        event: str,
        tier: str,
        limit: int,
        offset: int,
        min_score: int,
        **filters: str,
    ) -> tuple[list[MatchRow], int]:
        tiers = tiers_for_filter(tier)
        _validate_window(limit, offset, min_score)
        log = logger.bind(**filters, tier=tier)

        try:
            rows, total = await self.match_store.fetch_page(
                db_session,
                tiers=tiers,
                min_score=min_score,
                limit=limit,
                offset=offset,
                **filters,
            )
            visible = await self._filter_existing(rows)
        except Exception as exc:
            log.error(f"{event}_failed", error=str(exc))
            return [], 0

        if len(visible) < len(rows):
            log.info(f"{event}_orphans_hidden", hidden=len(rows) - len(visible))
        return [MatchRow.model_validate(r) for r in visible], total

    async def get_project_matches(
        self,
        db_session: AsyncSession,
        project_id: str,
        tier: str = "all",
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        min_score: int = MATCH_MIN_SCORE,
    ) -> MatchPage:
        """Products matched to ``project_id``, strongest first."""
        data, total = await self._page(
            db_session, "project_matches", tier, limit, offset, min_score,
            project_id=project_id,
        )
        return MatchPage(data=data, total=total)

    async def get_product_matched_projects(
        self,
        db_session: AsyncSession,
        product_id: str,
        tier: str = "all",
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        min_score: int = MATCH_MIN_SCORE,
    ) -> MatchPage:
        """Projects matched to ``product_id``, strongest first."""
        data, total = await self._page(
            db_session, "product_matches", tier, limit, offset, min_score,
            product_id=product_id,
        )
        return MatchPage(data=data, total=total)

    async def get_image_matches(
        self,
        db_session: AsyncSession,
        image_id: str,
        tier: str = "all",
        limit: int = DEFAULT_IMAGE_LIMIT,
        min_score: int = MATCH_MIN_SCORE,
    ) -> list[MatchRow]:
        """Matches citing ``image_id`` as evidence."""
        data, _ = await self._page(
            db_session, "image_matches", tier, limit, 0, min_score,
            image_id=image_id,
        )
        return data
