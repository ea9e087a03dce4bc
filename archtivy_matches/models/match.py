"""
Archtivy Matches — Project/product match model.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from archtivy_matches.database import Base, JSONType

# Ordered from most to least confident.
MATCH_TIERS: tuple[str, ...] = ("verified", "strong", "likely", "possible")
CONFIRMED_TIERS: tuple[str, ...] = ("verified", "strong", "likely")


class MatchRecord(Base):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("project_id", "product_id", name="uq_match_pair"),
        Index("ix_matches_project_score", "project_id", "score"),
        Index("ix_matches_product_score", "product_id", "score"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[str] = mapped_column(String, nullable=False)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, comment="0-100")
    tier: Mapped[str] = mapped_column(
        String, nullable=False, comment="verified / strong / likely / possible"
    )
    reasons: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list, comment="Ordered score explanation"
    )
    evidence_image_ids: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<MatchRecord {self.project_id} <-> {self.product_id} "
            f"score={self.score} tier={self.tier!r}>"
        )
