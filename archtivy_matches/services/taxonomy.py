"""
Archtivy Matches — Taxonomy Scorer

Pure, symmetric comparison of two products' taxonomy fields:

    type match         +20
    category match     +35
    subcategory match  +45   (capped at +10 when either side is the
                              "Other / Not specified" fallback)

Fields are compared after trimming; empty values never match.
"""

from __future__ import annotations

from archtivy_matches.schemas.listing import TaxonomyFields

SCORE_TYPE = 20
SCORE_CATEGORY = 35
SCORE_SUBCATEGORY = 45
SCORE_SUBCATEGORY_FALLBACK_CAP = 10

FALLBACK_SUBCATEGORY_LABEL = "Other / Not specified"
FALLBACK_SUBCATEGORY_ID = "other-not-specified"


def _clean(value: str | None) -> str:
    return (value or "").strip()


def is_fallback_subcategory(value: str | None) -> bool:
    cleaned = _clean(value)
    return cleaned in (FALLBACK_SUBCATEGORY_LABEL, FALLBACK_SUBCATEGORY_ID)


def taxonomy_score(a: TaxonomyFields, b: TaxonomyFields) -> int:
    """Return the 0–100 taxonomy agreement between two products."""
    score = 0

    type_a, type_b = _clean(a.product_type), _clean(b.product_type)
    if type_a and type_a == type_b:
        score += SCORE_TYPE

    cat_a, cat_b = _clean(a.product_category), _clean(b.product_category)
    if cat_a and cat_a == cat_b:
        score += SCORE_CATEGORY

    sub_a, sub_b = _clean(a.product_subcategory), _clean(b.product_subcategory)
    if sub_a and sub_a == sub_b:
        if is_fallback_subcategory(sub_a) or is_fallback_subcategory(sub_b):
            score += min(SCORE_SUBCATEGORY, SCORE_SUBCATEGORY_FALLBACK_CAP)
        else:
            score += SCORE_SUBCATEGORY

    return max(0, min(100, score))

