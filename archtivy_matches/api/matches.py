"""
Archtivy Matches — Matches API

Thin HTTP wrappers over the engine:

  POST /images                                   process one image
  POST /listings/{listing_type}/{listing_id}/images   backfill a listing
  POST /projects/{project_id}/compute            score candidate products
  POST /rebuild                                  recompute many projects
  GET  /projects/{project_id}                    products matched to a project
  GET  /products/{product_id}                    projects matched to a product
  GET  /images/{image_id}                        matches citing an image
"""

from __future__ import annotations

from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from archtivy_matches.config import ProviderConfig, get_settings
from archtivy_matches.database import get_db, get_session_factory
from archtivy_matches.schemas.match import (
    ComputeMatchesRequest,
    ComputeMatchesResult,
    MatchPage,
    MatchRow,
    ProcessImageRequest,
    ProcessImageResult,
    ProcessListingResult,
    RebuildMatchesRequest,
    RebuildMatchesResult,
    TierFilter,
)
from archtivy_matches.services.attribute_service import AttributeExtractor
from archtivy_matches.services.embedding_service import EmbeddingProvider
from archtivy_matches.services.listing_store import HttpListingStore
from archtivy_matches.services.matching_service import MATCH_MIN_SCORE, MatchingService
from archtivy_matches.services.pipeline_service import ImagePipeline
from archtivy_matches.services.query_service import MatchQueryService
from archtivy_matches.services.signal_store import ImageSignalStore

logger = structlog.get_logger("archtivy.api.matches")

router = APIRouter()

# ── Service singletons ────────────────────────────────────────────────────────

_listing_store: HttpListingStore | None = None
_matching_service: MatchingService | None = None
_query_service: MatchQueryService | None = None
_image_pipeline: ImagePipeline | None = None


def _get_listing_store() -> HttpListingStore:
    global _listing_store
    if _listing_store is None:
        _listing_store = HttpListingStore.from_settings(get_settings())
    return _listing_store


def _get_matching_service() -> MatchingService:
    global _matching_service
    if _matching_service is None:
        _matching_service = MatchingService(listing_store=_get_listing_store())
    return _matching_service


def _get_query_service() -> MatchQueryService:
    global _query_service
    if _query_service is None:
        _query_service = MatchQueryService(listing_store=_get_listing_store())
    return _query_service


def _get_image_pipeline() -> ImagePipeline:
    global _image_pipeline
    if _image_pipeline is None:
        settings = get_settings()
        provider_config = ProviderConfig.from_settings(settings)
        _image_pipeline = ImagePipeline(
            embedding_provider=EmbeddingProvider(provider_config),
            attribute_extractor=AttributeExtractor(provider_config),
            signal_store=ImageSignalStore(settings.EMBEDDING_DIM),
            session_factory=get_session_factory(),
            listing_store=_get_listing_store(),
            max_concurrency=settings.PIPELINE_MAX_CONCURRENCY,
        )
    return _image_pipeline


async def close_services() -> None:
    """Release the shared listing-store HTTP client."""
    global _listing_store, _matching_service, _query_service, _image_pipeline
    if _listing_store is not None:
        await _listing_store.aclose()
    _listing_store = None
    _matching_service = None
    _query_service = None
    _image_pipeline = None


# ──────────────────────────────────────────────────────────────────────────────
# Pipeline
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/images",
    response_model=ProcessImageResult,
    summary="Embed, tag and store one image",
)
async def process_image(body: ProcessImageRequest) -> ProcessImageResult:
    return await _get_image_pipeline().process_image(
        body.image_id,
        body.source,
        body.image_url,
        alt_text=body.alt_text,
        listing_id=body.listing_id,
    )


@router.post(
    "/listings/{listing_type}/{listing_id}/images",
    response_model=ProcessListingResult,
    summary="Process every image of a project or product",
)
async def process_listing_images(
    listing_type: Literal["project", "product"],
    listing_id: str,
) -> ProcessListingResult:
    return await _get_image_pipeline().process_listing_images(listing_type, listing_id)


# ──────────────────────────────────────────────────────────────────────────────
# Scoring
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/projects/{project_id}/compute",
    response_model=ComputeMatchesResult,
    summary="Score candidate products against a project",
)
async def compute_matches(
    project_id: str,
    body: ComputeMatchesRequest,
) -> ComputeMatchesResult:
    try:
        return await _get_matching_service().compute_and_upsert_matches(
            project_id,
            body.product_ids,
            timeout=body.timeout_seconds,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post(
    "/rebuild",
    response_model=RebuildMatchesResult,
    summary="Recompute matches for many projects",
)
async def rebuild_matches(body: RebuildMatchesRequest) -> RebuildMatchesResult:
    try:
        return await _get_matching_service().compute_all_matches(
            body.project_ids,
            timeout=body.timeout_seconds,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# ──────────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/projects/{project_id}",
    response_model=MatchPage,
    summary="Products matched to a project",
)
async def get_project_matches(
    project_id: str,
    tier: TierFilter = Query("all"),
    limit: int = Query(50, ge=0, le=200),
    offset: int = Query(0, ge=0),
    min_score: int = Query(MATCH_MIN_SCORE, ge=0, le=100),
    db: AsyncSession = Depends(get_db),
) -> MatchPage:
    return await _get_query_service().get_project_matches(
        db, project_id, tier=tier, limit=limit, offset=offset, min_score=min_score
    )


@router.get(
    "/products/{product_id}",
    response_model=MatchPage,
    summary="Projects matched to a product",
)
async def get_product_matched_projects(
    product_id: str,
    tier: TierFilter = Query("all"),
    limit: int = Query(50, ge=0, le=200),
    offset: int = Query(0, ge=0),
    min_score: int = Query(MATCH_MIN_SCORE, ge=0, le=100),
    db: AsyncSession = Depends(get_db),
) -> MatchPage:
    return await _get_query_service().get_product_matched_projects(
        db, product_id, tier=tier, limit=limit, offset=offset, min_score=min_score
    )


@router.get(
    "/images/{image_id}",
    response_model=list[MatchRow],
    summary="Matches citing an image as evidence",
)
async def get_image_matches(
    image_id: str,
    tier: TierFilter = Query("all"),
    limit: int = Query(20, ge=0, le=200),
    min_score: int = Query(MATCH_MIN_SCORE, ge=0, le=100),
    db: AsyncSession = Depends(get_db),
) -> list[MatchRow]:
    return await _get_query_service().get_image_matches(
        db, image_id, tier=tier, limit=limit, min_score=min_score
    )
