"""
Matching utilities - shared helpers for building and ordering match results
"""

import math
import re
from typing import Any, Dict, Optional

_PRICE_PATTERN = re.compile(r'^[-+]?(\d+\.?\d*|\.\d+)')


def normalize_category(category: Optional[str]) -> Optional[str]:
    """
    Normalize category string for consistent matching.

    Handles:
    - Case insensitivity (Footwear → footwear)
    - Whitespace trimming
    - Empty strings → None
    - "Unknown" variations → None

    Args:
        category: Category string (can be None)

    Returns:
        Normalized category or None
    """
    if category is None or not isinstance(category, str):
        return None

    category = category.strip().lower()

    if category == '':
        return None

    if category in ['unknown', 'uncategorized', 'none', 'n/a', 'na']:
        return None

    return category


def parse_price(price: Any) -> float:
    """
    Parse a display price such as "$1,299.99" into a number.

    Missing or unparseable prices count as 0 so they sort first.
    """
    if price is None or isinstance(price, bool):
        return 0.0

    if isinstance(price, (int, float)):
        value = float(price)
        return value if math.isfinite(value) else 0.0

    if not isinstance(price, str):
        return 0.0

    cleaned = price.strip().replace('$', '').replace(',', '').strip()
    match = _PRICE_PATTERN.match(cleaned)
    if not match:
        return 0.0
    return float(match.group(0))


def create_match_result(product: Dict, similarity: float, ai_scored: bool = True) -> Dict:
    """
    Create a standardized match result dictionary.

    Args:
        product: Catalog product
        similarity: Score in [0, 1]
        ai_scored: False when the score comes from the fallback scorer

    Returns:
        Copy of the product with 'similarity' and 'ai_scored' added
    """
    result = dict(product)
    result['similarity'] = float(max(0.0, min(1.0, similarity)))
    result['ai_scored'] = ai_scored
    return result
