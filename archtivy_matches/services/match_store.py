"""
Archtivy Matches — Match Store

Owns the ``matches`` table: one row per (project_id, product_id), written
with a dialect-native upsert so recomputation overwrites instead of
duplicating, and read back in stable, paginated order.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

import structlog
from sqlalchemy import String, cast, func, select, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from archtivy_matches.database import dialect_insert, dialect_name
from archtivy_matches.models.match import MATCH_TIERS, MatchRecord

logger = structlog.get_logger("archtivy.match_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchStore:
    """Upsert and paginated reads over ``MatchRecord`` rows."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow

    async def upsert_match(
        self,
        db_session: AsyncSession,
        project_id: str,
        product_id: str,
        score: int,
        tier: str,
        reasons: Sequence[dict],
        evidence_image_ids: Sequence[str],
    ) -> None:
        if tier not in MATCH_TIERS:
            raise ValueError(f"tier must be one of {MATCH_TIERS}, got {tier!r}")
        if not 0 <= int(score) <= 100:
            raise ValueError(f"score must be within 0-100, got {score}")

        values = {
            "project_id": project_id,
            "product_id": product_id,
            "score": int(score),
            "tier": tier,
            "reasons": list(reasons),
            "evidence_image_ids": list(evidence_image_ids),
            "updated_at": self._clock(),
        }
        stmt = dialect_insert(db_session, MatchRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[MatchRecord.project_id, MatchRecord.product_id],
            set_={
                "score": stmt.excluded.score,
                "tier": stmt.excluded.tier,
                "reasons": stmt.excluded.reasons,
                "evidence_image_ids": stmt.excluded.evidence_image_ids,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await db_session.execute(stmt)
        await db_session.flush()

        logger.debug(
            "match_upserted",
            project_id=project_id,
            product_id=product_id,
            score=int(score),
            tier=tier,
        )

    @staticmethod
    def _evidence_contains(db_session: AsyncSession, image_id: str):
        column = MatchRecord.evidence_image_ids
        if dialect_name(db_session) == "postgresql":
            return type_coerce(column, JSONB).contains([image_id])
        # Text match on the serialized array; json.dumps mirrors the column's
        # own quoting so only whole elements match.
        return cast(column, String).contains(json.dumps(image_id), autoescape=True)

    async def fetch_page(
        self,
        db_session: AsyncSession,
        *,
        project_id: str | None = None,
        product_id: str | None = None,
        image_id: str | None = None,
        tiers: Iterable[str] | None = None,
        min_score: int = 0,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[MatchRecord], int]:
        """Return one page of matches plus the total row count.

        Parameters
        ----------
        project_id, product_id, image_id:
            Exactly the filters to apply; at least one is required.
        tiers:
            Allowed tiers, or ``None`` for every tier.
        min_score:
            Rows scoring below this are excluded.
        limit, offset:
            Page window over the ordered result.

        Returns
        -------
        tuple[list[MatchRecord], int]
            The page (score desc, updated_at desc, counterpart id) and the
            count of all rows matching the filters.
        """
        if project_id is None and product_id is None and image_id is None:
            raise ValueError("one of project_id, product_id or image_id is required")

        conditions = [MatchRecord.score >= min_score]
        if project_id is not None:
            conditions.append(MatchRecord.project_id == project_id)
        if product_id is not None:
            conditions.append(MatchRecord.product_id == product_id)
        if image_id is not None:
            conditions.append(self._evidence_contains(db_session, image_id))
        if tiers is not None:
            conditions.append(MatchRecord.tier.in_(list(tiers)))

        if project_id is not None:
            tiebreak = (MatchRecord.product_id,)
        elif product_id is not None:
            tiebreak = (MatchRecord.project_id,)
        else:
            tiebreak = (MatchRecord.project_id, MatchRecord.product_id)

        count_stmt = select(func.count()).select_from(MatchRecord).where(*conditions)
        total = (await db_session.execute(count_stmt)).scalar_one()

        page_stmt = (
            select(MatchRecord)
            .where(*conditions)
            .order_by(MatchRecord.score.desc(), MatchRecord.updated_at.desc(), *tiebreak)
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        rows = list((await db_session.execute(page_stmt)).scalars().all())

        if image_id is not None:
            # The text match can over-select on SQLite; rows are rechecked here,
            # after LIMIT, so such a page may be short and `total` may count
            # the false positives.
            rows = [row for row in rows if image_id in (row.evidence_image_ids or [])]

        return rows, int(total)
