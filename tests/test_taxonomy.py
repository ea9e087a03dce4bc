"""Unit tests for the taxonomy scorer."""
import pytest

from archtivy_matches.schemas.listing import TaxonomyFields
from archtivy_matches.services.taxonomy import (
    FALLBACK_SUBCATEGORY_ID,
    FALLBACK_SUBCATEGORY_LABEL,
    is_fallback_subcategory,
    taxonomy_score,
)


def _fields(product_type=None, category=None, subcategory=None):
    return TaxonomyFields(
        product_type=product_type,
        product_category=category,
        product_subcategory=subcategory,
    )


class TestTaxonomyScore:

    def test_identical_specific_fields_score_100(self):
        a = _fields("Furniture", "Seating", "Lounge chairs")
        assert taxonomy_score(a, a) == 100

    def test_fallback_subcategory_is_capped(self):
        a = _fields("Furniture", "Seating", FALLBACK_SUBCATEGORY_LABEL)
        b = _fields("Furniture", "Seating", FALLBACK_SUBCATEGORY_LABEL)
        assert taxonomy_score(a, b) == 65

    def test_fallback_id_sentinel_is_capped(self):
        a = _fields("Lighting", None, FALLBACK_SUBCATEGORY_ID)
        b = _fields("Lighting", None, f"  {FALLBACK_SUBCATEGORY_ID} ")
        assert taxonomy_score(a, b) == 30

    def test_individual_contributions(self):
        base = _fields("Furniture", "Seating", "Stools")
        assert taxonomy_score(base, _fields("Furniture")) == 20
        assert taxonomy_score(base, _fields(None, "Seating")) == 35
        assert taxonomy_score(base, _fields(None, None, "Stools")) == 45

    def test_equality_after_trim_only(self):
        assert taxonomy_score(_fields(" Furniture "), _fields("Furniture")) == 20
        assert taxonomy_score(_fields("Furniture"), _fields("furniture")) == 0

    def test_empty_values_never_match(self):
        assert taxonomy_score(_fields("", "  "), _fields("", "  ")) == 0
        assert taxonomy_score(_fields(), _fields()) == 0

    @pytest.mark.parametrize(
        "a,b",
        [
            (_fields("Furniture", "Tables", "Dining"), _fields("Furniture", "Tables", "Coffee")),
            (_fields("Lighting", "Pendants", FALLBACK_SUBCATEGORY_LABEL), _fields("Lighting", "Pendants", "Globe")),
            (_fields(None, "Seating"), _fields("Furniture", "Seating", "Sofas")),
        ],
    )
    def test_symmetric_and_bounded(self, a, b):
        score = taxonomy_score(a, b)
        assert score == taxonomy_score(b, a)
        assert 0 <= score <= 100


class TestHelpers:

    def test_is_fallback_subcategory(self):
        assert is_fallback_subcategory("Other / Not specified")
        assert is_fallback_subcategory(" other-not-specified ")
        assert not is_fallback_subcategory("Other")
        assert not is_fallback_subcategory(None)

