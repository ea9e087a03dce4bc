"""
Archtivy Matches — Image Signal Store

Persists one ``ImageSignal`` per (image_id, source).  Writes are
idempotent upserts (last write wins) and are validated before they reach
the database: an embedding of the wrong length or with non-finite
components is rejected whole, never stored partially.

The Match Scorer reads image signals exclusively through this store.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from archtivy_matches.database import dialect_insert
from archtivy_matches.models.image_signal import IMAGE_SOURCES, ImageSignal
from archtivy_matches.services.attribute_service import clamp_confidence, normalize_tags

logger = structlog.get_logger("archtivy.signal_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_source(source: str) -> str:
    if source not in IMAGE_SOURCES:
        raise ValueError(f"source must be one of {IMAGE_SOURCES}, got {source!r}")
    return source


class ImageSignalStore:
    """Read/write access to the ``image_signals`` table."""

    def __init__(
        self,
        embedding_dim: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.embedding_dim = embedding_dim
        self._clock = clock or _utcnow

    def _validate_embedding(self, embedding: Sequence[float]) -> list[float]:
        if len(embedding) != self.embedding_dim:
            raise ValueError(
                f"embedding must have exactly {self.embedding_dim} components, "
                f"got {len(embedding)}"
            )
        values = [float(v) for v in embedding]
        if not all(math.isfinite(v) for v in values):
            raise ValueError("embedding contains non-finite values")
        return values

    @staticmethod
    def _validate_attrs(attrs: Mapping[str, Iterable[str]] | None) -> dict[str, list[str]]:
        cleaned: dict[str, list[str]] = {}
        for kind, values in (attrs or {}).items():
            if not isinstance(kind, str) or isinstance(values, (str, bytes)):
                raise ValueError(f"attrs[{kind!r}] must be a list of strings")
            values = list(values)
            if not all(isinstance(v, str) for v in values):
                raise ValueError(f"attrs[{kind!r}] must be a list of strings")
            tags = normalize_tags(values)
            if tags:
                cleaned[kind.strip().lower()] = tags
        return cleaned

    async def upsert_signal(
        self,
        db_session: AsyncSession,
        image_id: str,
        source: str,
        embedding: Sequence[float],
        attrs: Mapping[str, Iterable[str]] | None,
        confidence: float,
        listing_id: str | None = None,
    ) -> None:
        """Insert or overwrite the signal for (``image_id``, ``source``).

        Raises
        ------
        ValueError
            When the key, embedding, attributes or confidence are invalid.
            Nothing is written in that case.
        """
        if not image_id or not image_id.strip():
            raise ValueError("image_id must be a non-empty string")
        validate_source(source)
        vector = self._validate_embedding(embedding)
        tags = self._validate_attrs(attrs)
        if not math.isfinite(float(confidence)):
            raise ValueError("confidence must be finite")

        values = {
            "image_id": image_id,
            "source": source,
            "listing_id": listing_id,
            "embedding": vector,
            "attrs": tags,
            "confidence": clamp_confidence(confidence),
            "updated_at": self._clock(),
        }
        stmt = dialect_insert(db_session, ImageSignal).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ImageSignal.image_id, ImageSignal.source],
            set_={
                "listing_id": stmt.excluded.listing_id,
                "embedding": stmt.excluded.embedding,
                "attrs": stmt.excluded.attrs,
                "confidence": stmt.excluded.confidence,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await db_session.execute(stmt)
        await db_session.flush()

        logger.debug(
            "image_signal_upserted",
            image_id=image_id,
            source=source,
            listing_id=listing_id,
            kinds=sorted(tags),
        )

    async def get_signals(
        self,
        db_session: AsyncSession,
        image_ids: Iterable[str],
        source: str | None = None,
    ) -> list[ImageSignal]:
        ids = list(dict.fromkeys(i for i in image_ids if i))
        if not ids:
            return []

        stmt = select(ImageSignal).where(ImageSignal.image_id.in_(ids))
        if source is not None:
            stmt = stmt.where(ImageSignal.source == validate_source(source))
        # Upserts bypass the identity map, so refresh anything already loaded.
        stmt = stmt.order_by(ImageSignal.image_id, ImageSignal.source).execution_options(
            populate_existing=True
        )

        result = await db_session.execute(stmt)
        return list(result.scalars().all())

    async def get_listing_signals(
        self,
        db_session: AsyncSession,
        source: str,
    ) -> list[ImageSignal]:
        """Every signal of ``source`` that belongs to a listing."""
        stmt = (
            select(ImageSignal)
            .where(
                ImageSignal.source == validate_source(source),
                ImageSignal.listing_id.is_not(None),
            )
            .order_by(ImageSignal.listing_id, ImageSignal.image_id)
            .execution_options(populate_existing=True)
        )
        result = await db_session.execute(stmt)
        return list(result.scalars().all())

    async def list_listing_ids(self, db_session: AsyncSession, source: str) -> list[str]:
        """Distinct listing ids with at least one stored signal of ``source``."""
        stmt = (
            select(ImageSignal.listing_id)
            .where(
                ImageSignal.source == validate_source(source),
                ImageSignal.listing_id.is_not(None),
            )
            .distinct()
            .order_by(ImageSignal.listing_id)
        )
        result = await db_session.execute(stmt)
        return list(result.scalars().all())
