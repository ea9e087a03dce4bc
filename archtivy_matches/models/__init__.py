"""
Archtivy Matches — ORM model registry.

Importing every model here ensures that ``Base.metadata`` discovers all
tables before ``init_models()`` creates them.
"""

from archtivy_matches.models.image_signal import IMAGE_SOURCES, ImageSignal
from archtivy_matches.models.match import CONFIRMED_TIERS, MATCH_TIERS, MatchRecord

__all__ = [
    "IMAGE_SOURCES",
    "ImageSignal",
    "CONFIRMED_TIERS",
    "MATCH_TIERS",
    "MatchRecord",
]
