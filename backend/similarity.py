"""
Similarity computation module for product matching.

This module implements the scoring used to compare image embeddings:
- Cosine similarity remapped from [-1, 1] to [0, 1]
- Category-weighted similarity (fixed per-category boost)
- Deterministic ranking of scored products

All similarity scores are normalized to the 0-1 range where:
- 1 = identical direction
- 0.5 = orthogonal
- 0 = opposite, or nothing to compare (zero vector)

Error Handling:
- Vector lengths must match (VectorLengthMismatchError otherwise)
- Non-numeric / NaN / Inf entries are skipped index-wise during comparison
- validate_embedding() rejects vectors where most values are invalid
"""

import numbers
import numpy as np
from typing import Dict, List, Optional, Tuple

from matching_utils import normalize_category, parse_price

# Additive boost per category (normalized names)
CATEGORY_BOOSTS = {
    'footwear': 0.12,
    'clothing': 0.10,
    'accessories': 0.08,
    'electronics': 0.05
}

# Ranking priority when similarities are tied; unknown categories go last
CATEGORY_PRIORITY = ['footwear', 'clothing', 'accessories', 'electronics']

# Scores within this distance of a tie group's leader are considered tied
TIE_TOLERANCE = 0.05
_TIE_EPSILON = 1e-9


class SimilarityComputationError(Exception):
    """Base exception for similarity computation errors"""
    def __init__(self, message: str, error_code: str, suggestion: str = None):
        self.message = message
        self.error_code = error_code
        self.suggestion = suggestion
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to dictionary for API responses"""
        return {
            'error': self.message,
            'error_code': self.error_code,
            'suggestion': self.suggestion
        }


class InvalidFeatureError(SimilarityComputationError):
    """Raised when feature vectors are invalid or corrupted"""
    def __init__(self, message: str, suggestion: str = None):
        super().__init__(
            message,
            'INVALID_FEATURES',
            suggestion or 'Feature vectors may be corrupted. Try re-extracting features from the image.'
        )


class VectorLengthMismatchError(SimilarityComputationError):
    """Raised when two compared vectors have different lengths"""
    def __init__(self, message: str, suggestion: str = None):
        super().__init__(
            message,
            'VECTOR_LENGTH_MISMATCH',
            suggestion or 'Embeddings were produced by different models. Clear the caches and recompute.'
        )


def _coerce_value(value) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return np.nan
    return float(value)


def _to_float_array(values) -> np.ndarray:
    """Flatten to float64, turning non-numeric entries into NaN"""
    if isinstance(values, np.ndarray) and values.dtype.kind in 'fiu':
        return values.astype(np.float64).ravel()
    return np.array([_coerce_value(v) for v in np.ravel(np.asarray(values, dtype=object))], dtype=np.float64)


def validate_embedding(raw, expected_dim: Optional[int] = None) -> Tuple[np.ndarray, int]:
    """
    Validate model output at the extraction boundary.

    A minority of invalid (non-numeric, NaN, Inf) values is tolerated:
    they are kept as NaN and skipped during comparison.

    Args:
        raw: Sequence or array returned by the model
        expected_dim: Embedding length the active model produces

    Returns:
        Tuple of (float32 vector, number of invalid values)

    Raises:
        InvalidFeatureError: If the output is missing, empty or mostly invalid
        VectorLengthMismatchError: If the length differs from expected_dim
    """
    if raw is None:
        raise InvalidFeatureError('AI model returned invalid output')

    vector = _to_float_array(raw)

    if vector.size == 0:
        raise InvalidFeatureError('No features extracted from image')

    if expected_dim is not None and vector.size != expected_dim:
        raise VectorLengthMismatchError(
            f'Expected {expected_dim}-dimensional embedding, got {vector.size}'
        )

    invalid_count = int(np.count_nonzero(~np.isfinite(vector)))
    if invalid_count * 2 > vector.size:
        raise InvalidFeatureError(
            f'{invalid_count} of {vector.size} feature values are invalid'
        )

    with np.errstate(over='ignore'):
        vector32 = vector.astype(np.float32)
    return vector32, invalid_count


def cosine_similarity(vec_a, vec_b) -> float:
    """
    Cosine similarity remapped to [0, 1] via (cos + 1) / 2.

    Indices where either value is not a finite number are skipped.

    Returns:
        Similarity in [0, 1]; 0 if either vector has zero norm

    Raises:
        InvalidFeatureError: If either vector is None
        VectorLengthMismatchError: If the vectors have different lengths
    """
    if vec_a is None or vec_b is None:
        raise InvalidFeatureError('Invalid feature vectors provided')

    a = _to_float_array(vec_a)
    b = _to_float_array(vec_b)

    if a.size != b.size:
        raise VectorLengthMismatchError(f'Vector length mismatch: {a.size} vs {b.size}')

    if a.size == 0:
        return 0.0

    valid = np.isfinite(a) & np.isfinite(b)
    if not valid.all():
        a = a[valid]
        b = b[valid]

    with np.errstate(over='ignore', invalid='ignore'):
        dot_product = float(np.dot(a, b))
        norm_a = float(np.dot(a, a))
        norm_b = float(np.dot(b, b))

        if norm_a == 0 or norm_b == 0:
            return 0.0

        similarity = dot_product / (np.sqrt(norm_a) * np.sqrt(norm_b))

    if not np.isfinite(similarity):
        return 0.0

    return float(np.clip((similarity + 1.0) / 2.0, 0.0, 1.0))


def get_category_boost(category: Optional[str]) -> float:
    return CATEGORY_BOOSTS.get(normalize_category(category), 0.0)


def get_category_rank(category: Optional[str]) -> int:
    normalized = normalize_category(category)
    if normalized in CATEGORY_PRIORITY:
        return CATEGORY_PRIORITY.index(normalized)
    return len(CATEGORY_PRIORITY)


def enhanced_similarity(vec_a, vec_b, category: Optional[str]) -> float:
    """
    Cosine similarity plus the category boost, capped at 1.

    Footwear +0.12, Clothing +0.10, Accessories +0.08, Electronics +0.05,
    anything else +0.
    """
    base_similarity = cosine_similarity(vec_a, vec_b)
    return min(1.0, base_similarity + get_category_boost(category))


def _id_key(product_id):
    if isinstance(product_id, numbers.Real) and not isinstance(product_id, bool):
        return (0, float(product_id), '')
    return (1, 0.0, '' if product_id is None else str(product_id))


def _score(result: Dict) -> float:
    """Similarity of a result; a missing score counts as 0"""
    return float(result.get('similarity', 0.0))


def ranking_key(result: Dict, tie_group: int) -> tuple:
    """Sort key of a result inside rank_results()"""
    return (
        tie_group,
        get_category_rank(result.get('category')),
        parse_price(result.get('price')),
        -_score(result),
        _id_key(result.get('id'))
    )


def assign_tie_groups(similarities: List[float], tolerance: float = TIE_TOLERANCE) -> List[int]:
    """
    Group descending-sorted scores into tie groups.

    A score joins the current group while it is within `tolerance` of the
    group's leader (its highest score); otherwise it starts a new group.
    Anchoring on the leader keeps the grouping, and so the final order,
    transitive.
    """
    groups = []
    group = -1
    leader = None
    for score in similarities:
        if leader is None or leader - score > tolerance + _TIE_EPSILON:
            group += 1
            leader = score
        groups.append(group)
    return groups


def rank_results(results: List[Dict], min_similarity: float = 0.0) -> List[Dict]:
    """
    Filter and order scored results.

    1. Drop results with similarity below min_similarity
    2. Order by similarity descending, treating scores within 0.05 of the
       tie group leader as equal
    3. Ties: category priority (Footwear, Clothing, Accessories,
       Electronics, others)
    4. Ties: ascending price (missing / unparseable = 0)

    Remaining ties fall back to similarity then product ID so the order is
    total and reproducible.
    """
    filtered = [r for r in results if _score(r) >= min_similarity]
    by_score = sorted(filtered, key=_score, reverse=True)
    groups = assign_tie_groups([_score(r) for r in by_score])

    keyed = [(ranking_key(result, group), result) for result, group in zip(by_score, groups)]
    keyed.sort(key=lambda item: item[0])
    return [result for _, result in keyed]
