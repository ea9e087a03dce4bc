"""
Archtivy Matches — Per-image AI signal model.
"""

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from archtivy_matches.database import Base, JSONType

IMAGE_SOURCES: tuple[str, ...] = ("project", "product")


class ImageSignal(Base):
    __tablename__ = "image_signals"
    __table_args__ = (
        Index("ix_image_signals_listing", "source", "listing_id"),
    )

    image_id: Mapped[str] = mapped_column(String, primary_key=True)
    source: Mapped[str] = mapped_column(
        String, primary_key=True, comment="project / product"
    )
    listing_id: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Owning project or product id"
    )
    embedding: Mapped[list] = mapped_column(
        JSONType, nullable=False, comment="L2-normalized or all-zero, length EMBEDDING_DIM"
    )
    attrs: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    confidence: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, comment="0-100"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<ImageSignal {self.source}:{self.image_id} "
            f"confidence={self.confidence:.1f}>"
        )
