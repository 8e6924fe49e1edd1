"""
Explicit structured parameters supplied alongside a free-text query.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

class PriceRange(BaseModel):
    """Model for price range parameters."""
    min: Optional[float] = None
    max: Optional[float] = None

    @field_validator('min', 'max')
    @classmethod
    def validate_price(cls, v):
        """Ensure prices are non-negative."""
        if v is not None and v < 0:
            raise ValueError("Price cannot be negative")
        return v

    def is_empty(self) -> bool:
        return self.min is None and self.max is None

class SearchFilters(BaseModel):
    """Filters the caller states explicitly; never parsed from free text by the builder."""
    price_range: Optional[PriceRange] = None
    brands: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    in_stock: Optional[bool] = None
    min_rating: Optional[float] = None

    @field_validator('brands', 'categories')
    @classmethod
    def strip_values(cls, v):
        """Drop blank entries and surrounding whitespace."""
        return [item.strip() for item in v if item and item.strip()]

    def is_empty(self) -> bool:
        return (
            (self.price_range is None or self.price_range.is_empty())
            and not self.brands
            and not self.categories
            and self.in_stock is None
            and self.min_rating is None
        )

class QueryParams(BaseModel):
    """Per-request knobs that are not filters."""
    result_limit: int = Field(default=50, ge=1, le=1000)
    trace_budget_ms: int = Field(default=250, ge=0)

# Define valid intents for validation
VALID_INTENTS = [
    "PRODUCT_DISCOVERY",  # General browsing
    "SPECIFIC_PRODUCT",   # Looking for specific product
    "ATTRIBUTE_SEARCH",   # Searching by attributes
    "PROBLEM_SOLUTION",   # Describing a problem to solve
    "COMPARISON",         # Comparing products
    "PRICE_BASED",        # Price-focused search
    "AVAILABILITY"        # Stock checking
]
