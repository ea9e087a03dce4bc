from typing import Optional

from pydantic import BaseModel


class ImageRef(BaseModel):
    image_id: str
    url: str
    alt_text: Optional[str] = None


class TaxonomyFields(BaseModel):
    product_type: Optional[str] = None
    product_category: Optional[str] = None
    product_subcategory: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not any(
            (value or "").strip()
            for value in (self.product_type, self.product_category, self.product_subcategory)
        )
