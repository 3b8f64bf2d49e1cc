"""
Product catalog loading.

A catalog is a JSON array of products:
    {"id": 1, "name": "...", "category": "Footwear", "price": "$89.99",
     "image_url": "https://..."}

Embeddings are never stored on products; the engine's product cache owns
them, keyed by product ID.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SAMPLE_CATALOG_PATH = os.path.join(os.path.dirname(__file__), 'data', 'sample_catalog.json')

DEFAULT_CATEGORY = 'Uncategorized'


class CatalogError(Exception):
    """Raised when a catalog file or product entry is invalid"""
    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.error_code = 'INVALID_CATALOG'
        self.suggestion = suggestion or 'Each product needs an id and an image_url.'
        super().__init__(self.message)

    def to_dict(self):
        return {
            'error': self.message,
            'error_code': self.error_code,
            'suggestion': self.suggestion
        }


def validate_product(product: Any, index: int = 0) -> Dict[str, Any]:
    """
    Validate one catalog entry and fill defaults.

    Returns:
        Normalized copy of the product

    Raises:
        CatalogError: If id or image_url are missing
    """
    if not isinstance(product, dict):
        raise CatalogError(f'Product at position {index} must be an object')

    if product.get('id') is None or isinstance(product.get('id'), bool):
        raise CatalogError(f'Product at position {index} is missing an id')

    image_url = product.get('image_url')
    if not image_url or not isinstance(image_url, str):
        raise CatalogError(f"Product {product['id']} is missing an image_url")

    normalized = dict(product)
    category = normalized.get('category')
    if not isinstance(category, str) or not category.strip():
        normalized['category'] = DEFAULT_CATEGORY
    normalized.setdefault('name', f"Product {product['id']}")
    normalized.setdefault('price', None)
    return normalized


def validate_catalog(products: Any) -> List[Dict[str, Any]]:
    if not isinstance(products, list):
        raise CatalogError('Catalog must be a JSON array of products')

    catalog = []
    seen_ids = set()
    for index, product in enumerate(products):
        normalized = validate_product(product, index)
        if normalized['id'] in seen_ids:
            raise CatalogError(f"Duplicate product id {normalized['id']}")
        seen_ids.add(normalized['id'])
        catalog.append(normalized)
    return catalog


def load_catalog(path: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Load a catalog from JSON.

    Args:
        path: Catalog file; defaults to $CATALOG_PATH, then the sample catalog

    Returns:
        List of validated product dictionaries
    """
    path = path or os.environ.get('CATALOG_PATH') or SAMPLE_CATALOG_PATH

    try:
        with open(path, 'r', encoding='utf-8') as f:
            products = json.load(f)
    except OSError as e:
        raise CatalogError(f'Cannot read catalog {path}: {e}', 'Check CATALOG_PATH.')
    except ValueError as e:
        raise CatalogError(f'Catalog {path} is not valid JSON: {e}')

    catalog = validate_catalog(products)
    logger.info(f"Loaded {len(catalog)} products from {path}")
    return catalog


def get_categories(catalog: List[Dict[str, Any]]) -> List[str]:
    """Distinct categories in catalog order"""
    categories = []
    for product in catalog:
        category = product.get('category')
        if category not in categories:
            categories.append(category)
    return categories
