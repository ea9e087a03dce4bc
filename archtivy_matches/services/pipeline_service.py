"""
Archtivy Matches — Image Pipeline

Produces and stores the signal for one image:

    alt text (given, or generated)  →  embedding  →  attributes  →  ImageSignal

Provider degradation (no credentials, exhausted retries, malformed
attributes) is reported as warnings and still yields a stored signal with
a zero embedding or empty attributes.  ``ok`` is false only for invalid
input or a failed store write.
"""

from __future__ import annotations

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from archtivy_matches.models.image_signal import IMAGE_SOURCES
from archtivy_matches.schemas.match import ProcessImageResult, ProcessListingResult
from archtivy_matches.services.attribute_service import AttributeExtractor
from archtivy_matches.services.embedding_service import EmbeddingProvider
from archtivy_matches.services.listing_store import (
    ListingStore,
    ListingStoreError,
    validate_listing_type,
)
from archtivy_matches.services.signal_store import ImageSignalStore

logger = structlog.get_logger("archtivy.pipeline_service")


class ImagePipeline:
    """Embeds, tags and stores images for the Match Scorer."""

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        attribute_extractor: AttributeExtractor,
        signal_store: ImageSignalStore,
        session_factory: async_sessionmaker[AsyncSession],
        listing_store: ListingStore | None = None,
        max_concurrency: int = 4,
    ) -> None:
        self.embedding_provider = embedding_provider
        self.attribute_extractor = attribute_extractor
        self.signal_store = signal_store
        self.session_factory = session_factory
        self.listing_store = listing_store
        self.max_concurrency = max(1, max_concurrency)

    async def process_image(
        self,
        image_id: str,
        source: str,
        image_url: str,
        alt_text: str | None = None,
        listing_id: str | None = None,
    ) -> ProcessImageResult:
        if not isinstance(image_id, str) or not image_id.strip():
            return ProcessImageResult(ok=False, error="image_id must be a non-empty string")
        if source not in IMAGE_SOURCES:
            return ProcessImageResult(ok=False, error=f"source must be one of {IMAGE_SOURCES}")
        if not isinstance(image_url, str) or not image_url.strip():
            return ProcessImageResult(ok=False, error="image_url must be a non-empty string")

        log = logger.bind(image_id=image_id, source=source, listing_id=listing_id)
        warnings: list[str] = []

        alt = (alt_text or "").strip()
        if not alt and self.attribute_extractor.is_live:
            described = await self.attribute_extractor.describe_image(image_url)
            if described.error:
                warnings.append(f"alt text: {described.error}")
            alt = described.alt

        embedded = await self.embedding_provider.embed_image(image_url, alt or None)
        if embedded.error:
            warnings.append(f"embedding: {embedded.error}")

        extracted = await self.attribute_extractor.extract_attributes(image_url)
        if extracted.error:
            warnings.append(f"attributes: {extracted.error}")

        try:
            async with self.session_factory() as db_session:
                await self.signal_store.upsert_signal(
                    db_session,
                    image_id=image_id,
                    source=source,
                    embedding=embedded.vector,
                    attrs=extracted.attrs,
                    confidence=extracted.confidence,
                    listing_id=listing_id,
                )
                await db_session.commit()
        except Exception as exc:
            log.error("image_signal_write_failed", error=str(exc))
            return ProcessImageResult(ok=False, error=f"store write failed: {exc}", warnings=warnings)

        log.info(
            "image_processed",
            embedding_source=embedded.source,
            kinds=sorted(extracted.attrs),
            warnings=len(warnings),
        )
        return ProcessImageResult(ok=True, warnings=warnings)

    async def process_listing_images(
        self,
        listing_type: str,
        listing_id: str,
    ) -> ProcessListingResult:
        """Process every image of one project or product listing."""
        validate_listing_type(listing_type)
        if self.listing_store is None:
            raise RuntimeError("process_listing_images requires a listing store")

        log = logger.bind(listing_type=listing_type, listing_id=listing_id)
        try:
            if listing_type == "project":
                images = await self.listing_store.list_project_images(listing_id)
            else:
                images = await self.listing_store.list_product_images(listing_id)
        except ListingStoreError as exc:
            log.warning("listing_images_unavailable", error=str(exc))
            return ProcessListingResult(processed=0, errors=[str(exc)])

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(image) -> ProcessImageResult:
            async with semaphore:
                return await self.process_image(
                    image.image_id,
                    listing_type,
                    image.url,
                    alt_text=image.alt_text,
                    listing_id=listing_id,
                )

        results = await asyncio.gather(*(_bounded(img) for img in images))

        processed = 0
        errors: list[str] = []
        for image, result in zip(images, results):
            if result.ok:
                processed += 1
            else:
                errors.append(f"{image.image_id}: {result.error}")

        log.info("listing_images_processed", images=len(images), processed=processed, errors=len(errors))
        return ProcessListingResult(processed=processed, errors=errors)
