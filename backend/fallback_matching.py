"""
Degraded-mode scoring used when the AI model is unavailable.

Scores are random within a fixed range and every result is flagged with
ai_scored=False so the caller can tell the user the ranking is not visual.
"""

import logging
import random
from typing import Dict, List, Optional, Tuple

from matching_utils import create_match_result

logger = logging.getLogger(__name__)

FALLBACK_SCORE_RANGE = (0.5, 0.8)


class FallbackProvider:
    def __init__(self, score_range: Tuple[float, float] = FALLBACK_SCORE_RANGE,
                 rng: Optional[random.Random] = None):
        low, high = score_range
        if not 0.0 <= low <= high <= 1.0:
            raise ValueError(f'Invalid fallback score range: {score_range}')
        self.score_range = (low, high)
        self.rng = rng or random.Random()

    def score(self, catalog: List[Dict]) -> List[Dict]:
        """Random similarity per product, highest first"""
        logger.info(f"Using fallback similarity calculation for {len(catalog)} products")
        low, high = self.score_range

        results = [
            create_match_result(product, low + self.rng.random() * (high - low), ai_scored=False)
            for product in catalog
        ]
        results.sort(key=lambda r: r['similarity'], reverse=True)
        return results
