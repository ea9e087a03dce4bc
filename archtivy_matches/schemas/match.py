from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TierFilter = Literal["all", "possible", "verified"]
ReasonType = Literal["embedding", "attribute", "taxonomy", "frequency"]


class MatchReason(BaseModel):
    type: ReasonType
    score: int
    matches: list[str] = Field(default_factory=list)


class MatchRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: str
    product_id: str
    score: int
    tier: str
    reasons: list[MatchReason]
    evidence_image_ids: list[str]
    updated_at: datetime


class MatchPage(BaseModel):
    data: list[MatchRow]
    total: int


class ComputeMatchesRequest(BaseModel):
    # None discovers candidates from the stored product signals
    product_ids: Optional[list[str]] = None
    timeout_seconds: Optional[float] = None


class ComputeMatchesResult(BaseModel):
    upserted: int
    errors: list[str]


class RebuildMatchesRequest(BaseModel):
    project_ids: Optional[list[str]] = None
    timeout_seconds: Optional[float] = None


class RebuildMatchesResult(BaseModel):
    projects_processed: int
    upserted: int
    errors: list[str]


class ProcessImageRequest(BaseModel):
    image_id: str
    source: Literal["project", "product"]
    image_url: str
    alt_text: Optional[str] = None
    listing_id: Optional[str] = None


class ProcessImageResult(BaseModel):
    ok: bool
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class ProcessListingResult(BaseModel):
    processed: int
    errors: list[str]
