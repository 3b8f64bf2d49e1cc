"""
Validation utilities - request parameter checks shared by the API routes.

Every validator returns (value, error_message); exactly one is None.
"""

import math
import re

from image_processing import is_http_url, is_image_data_uri


def validate_threshold(threshold, name='min_similarity'):
    """Validate a similarity threshold (0-1)"""
    try:
        threshold = float(threshold)
    except (ValueError, TypeError):
        return None, f'{name} must be a number, got {threshold}'

    if math.isnan(threshold) or not 0 <= threshold <= 1:
        return None, f'{name} must be between 0 and 1, got {threshold}'
    return threshold, None


def validate_limit(limit, max_limit=100):
    """Validate limit parameter (clamped to max_limit)"""
    if isinstance(limit, bool):
        return None, f'limit must be an integer, got {limit}'
    try:
        limit = int(limit)
        if limit < 0:
            return None, f'limit must be non-negative, got {limit}'
        if limit > max_limit:
            limit = max_limit
        return limit, None
    except (ValueError, TypeError):
        return None, f'limit must be an integer, got {limit}'


def validate_image_reference_param(image_url):
    """Validate an image reference sent in a request body

    Args:
        image_url: http(s) URL or data:image URI

    Returns:
        Tuple of (validated_reference, error_message)
    """
    if image_url is None:
        return None, 'image_url is required'

    if not isinstance(image_url, str):
        return None, f'image_url must be a string, got {type(image_url).__name__}'

    image_url = image_url.strip()
    if image_url == '':
        return None, 'image_url is empty'

    if not (is_image_data_uri(image_url) or is_http_url(image_url)):
        return None, 'image_url must be an http(s) URL or a data:image URI'

    return image_url, None


# ============ Catalog Validation ============

def validate_category(category, max_length=100):
    """Validate category filter string

    Returns:
        Tuple of (validated_category, error_message)
        - (category, None) if valid
        - (None, None) when no filter was given
        - (None, error_message) if invalid
    """
    if category is None:
        return None, None

    if not isinstance(category, str):
        return None, f'category must be a string, got {type(category).__name__}'

    category = category.strip()

    if category == '':
        return None, None  # Empty string means no filter

    if len(category) > max_length:
        return None, f'category too long (max {max_length} characters)'

    # Allow alphanumeric, spaces, hyphens, underscores, ampersands
    if not re.match(r'^[\w\s\-&]+$', category, re.UNICODE):
        return None, 'category contains invalid characters (use letters, numbers, spaces, hyphens, underscores)'

    return category, None


def validate_cache_target(target):
    """Validate which embedding cache to clear"""
    valid_targets = ['all', 'images', 'products']

    if target is None:
        return 'all', None

    if target not in valid_targets:
        return None, f'target must be one of: {", ".join(valid_targets)}'

    return target, None
