"""
Parameter extraction component for the query pipeline.

Turns explicit price phrases in the sanitized text into structured filter
parameters before the query builder runs; the builder itself never parses text.
"""
import re
import logging
from typing import Optional

from models.parameters import PriceRange, SearchFilters

logger = logging.getLogger(__name__)

_AMOUNT = r'\$?\s*(\d+(?:[.,]\d+)?)\s*(k\b)?(?!\w)'

PRICE_BETWEEN_PATTERN = re.compile(r'\bbetween\s+' + _AMOUNT + r'\s+and\s+' + _AMOUNT, re.IGNORECASE)
PRICE_RANGE_PATTERN = re.compile(r'\$\s*(\d+(?:[.,]\d+)?)\s*(k)?\s*(?:-|to)\s*' + _AMOUNT, re.IGNORECASE)
PRICE_MAX_PATTERN = re.compile(r'\b(?:under|below|less\s+than|cheaper\s+than|up\s+to)\s+' + _AMOUNT, re.IGNORECASE)
PRICE_MIN_PATTERN = re.compile(r'\b(?:over|above|more\s+than|at\s+least)\s+' + _AMOUNT, re.IGNORECASE)

def _amount(number: str, thousands: Optional[str]) -> float:
    value = float(number.replace(',', ''))
    if thousands:
        value *= 1000
    return value

def extract_price_range(text: str) -> Optional[PriceRange]:
    """
    Extract a price range from query text.

    Args:
        text: Sanitized query text

    Returns:
        PriceRange if a price phrase was found, else None
    """
    if not text:
        return None

    match = PRICE_BETWEEN_PATTERN.search(text) or PRICE_RANGE_PATTERN.search(text)
    if match:
        low = _amount(match.group(1), match.group(2))
        high = _amount(match.group(3), match.group(4))
        return PriceRange(min=min(low, high), max=max(low, high))

    price_min = None
    price_max = None
    match = PRICE_MAX_PATTERN.search(text)
    if match:
        price_max = _amount(match.group(1), match.group(2))
    match = PRICE_MIN_PATTERN.search(text)
    if match:
        price_min = _amount(match.group(1), match.group(2))

    if price_min is None and price_max is None:
        return None
    return PriceRange(min=price_min, max=price_max)

def merge_text_parameters(text: str, filters: Optional[SearchFilters]) -> SearchFilters:
    """
    Fill in price bounds found in the text that the caller did not set.

    Explicit caller values always win.

    Args:
        text: Sanitized query text
        filters: Caller-supplied filters (may be None)

    Returns:
        New SearchFilters instance
    """
    merged = filters.model_copy(deep=True) if filters is not None else SearchFilters()
    extracted = extract_price_range(text)
    if extracted is None:
        return merged

    current = merged.price_range or PriceRange()
    price_range = PriceRange(
        min=current.min if current.min is not None else extracted.min,
        max=current.max if current.max is not None else extracted.max,
    )
    logger.info(f"Extracted price constraint from text: min={price_range.min}, max={price_range.max}")
    merged.price_range = price_range
    return merged
