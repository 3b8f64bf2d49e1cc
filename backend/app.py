from flask import Flask, request, jsonify
from flask_cors import CORS
import logging

from catalog import CatalogError, get_categories, load_catalog
from model_manager import ModelInitializationError
from product_matching import get_engine
from validation_utils import (
    validate_threshold, validate_limit, validate_image_reference_param,
    validate_category, validate_cache_target
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

# Catalog is loaded on first use; tests and launchers may set it directly
app.config['CATALOG'] = None

# Supported image formats
ALLOWED_EXTENSIONS = {'jpg', 'jpeg', 'png', 'webp'}

def allowed_file(filename):
    """Check if file extension is allowed"""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS

def create_error_response(error_code, message, suggestion=None, details=None, status_code=400):
    """Create standardized error response"""
    response = {
        'error': message,
        'error_code': error_code
    }
    if suggestion:
        response['suggestion'] = suggestion
    if details:
        response['details'] = details

    logger.error(f"Error {error_code}: {message}")
    return jsonify(response), status_code

def get_catalog():
    """Active catalog (loaded from CATALOG_PATH or the sample catalog on first use)"""
    if app.config['CATALOG'] is None:
        app.config['CATALOG'] = load_catalog()
    return app.config['CATALOG']

def filter_by_category(catalog, category):
    if category is None:
        return catalog
    wanted = category.lower()
    return [p for p in catalog if str(p.get('category', '')).lower() == wanted]

@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({'status': 'ok', 'message': 'Backend is running'})

@app.route('/api/model/status', methods=['GET'])
def get_model_status():
    """Model lifecycle state and cache statistics"""
    return jsonify(get_engine().status()), 200

@app.route('/api/model/info', methods=['GET'])
def get_model_info_route():
    """
    Static CLIP model information.

    Returns:
    - 200: Success with model info
    - 500: Server error
    """
    try:
        from image_processing_clip import get_model_info, is_clip_available

        if not is_clip_available():
            return jsonify({
                'status': 'unavailable',
                'message': 'CLIP is not available. PyTorch or sentence-transformers not installed.',
                'suggestion': 'Install dependencies: pip install torch sentence-transformers',
                'model_info': get_model_info()
            }), 200

        return jsonify({
            'status': 'success',
            'model_info': get_model_info()
        }), 200

    except Exception as e:
        logger.error(f"Error getting model info: {e}", exc_info=True)
        return create_error_response(
            'MODEL_INFO_ERROR',
            'Failed to get model information',
            'Please try again',
            {'error': str(e)},
            status_code=500
        )

@app.route('/api/model/config', methods=['GET'])
def get_model_config():
    """
    Get engine configuration.

    Returns:
    - 200: Success with config
    - 500: Server error
    """
    try:
        from image_processing_clip import load_clip_config

        return jsonify({
            'status': 'success',
            'config': load_clip_config()
        }), 200

    except Exception as e:
        logger.error(f"Error getting model config: {e}", exc_info=True)
        return create_error_response(
            'CONFIG_ERROR',
            'Failed to get model configuration',
            'Please try again',
            {'error': str(e)},
            status_code=500
        )

@app.route('/api/model/config', methods=['POST'])
def update_model_config():
    """
    Update engine configuration.

    JSON body: any of model_name, load_timeout, max_retries, retry_base_delay,
    batch_size, batch_delay, precheck_remote, precheck_timeout, fetch_timeout,
    min_similarity, relaxed_similarity

    Threshold changes apply immediately; the rest apply after a restart.

    Returns:
    - 200: Success with saved config
    - 400: Unknown key or invalid value
    - 500: Config file could not be written
    """
    from image_processing_clip import update_clip_config

    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return create_error_response(
            'MISSING_BODY',
            'Request body is required',
            'Send a JSON object with the settings to change',
            status_code=400
        )

    try:
        config = update_clip_config(data)
    except ValueError as e:
        return create_error_response('INVALID_CONFIG', str(e), status_code=400)
    except OSError as e:
        return create_error_response(
            'CONFIG_UPDATE_ERROR',
            'Failed to save model configuration',
            'Check permissions on the model cache directory',
            {'error': str(e)},
            status_code=500
        )

    engine = get_engine()
    if 'min_similarity' in data:
        engine.min_similarity = config['min_similarity']
    if 'relaxed_similarity' in data:
        engine.relaxed_similarity = config['relaxed_similarity']

    return jsonify({
        'status': 'success',
        'config': config,
        'updated': sorted(data.keys())
    }), 200

@app.route('/api/model/reload', methods=['POST'])
def reload_model():
    """
    Discard the loaded model and initialize again.

    Returns:
    - 200: Model ready
    - 503: Initialization failed (classified error)
    """
    engine = get_engine()
    try:
        engine.model_manager.reload()
    except ModelInitializationError as e:
        return create_error_response(
            e.error_code,
            e.message,
            e.suggestion,
            {'failures': e.failures} if e.failures else None,
            status_code=503
        )

    return jsonify({
        'status': 'success',
        'model': engine.model_manager.status()
    }), 200

@app.route('/api/catalog/products', methods=['GET'])
def get_catalog_products():
    """
    List catalog products.

    Query parameters:
    - category: Category filter (case-insensitive)

    Returns:
    - 200: Success with products list
    - 400: Invalid category
    - 500: Catalog could not be loaded
    """
    category, error = validate_category(request.args.get('category'))
    if error:
        return create_error_response('INVALID_CATEGORY', error, status_code=400)

    try:
        catalog = get_catalog()
    except CatalogError as e:
        return create_error_response(e.error_code, e.message, e.suggestion, status_code=500)

    products = filter_by_category(catalog, category)
    logger.info(f"[GET-PRODUCTS] {len(products)} of {len(catalog)} products returned (category={category})")

    return jsonify({
        'products': products,
        'total': len(products),
        'categories': get_categories(catalog)
    }), 200

@app.route('/api/catalog/precompute', methods=['POST'])
def precompute_catalog():
    """
    Pre-compute embeddings for every catalog product not yet cached.

    Returns:
    - 200: Batch result (partial failures are listed, not fatal)
    - 500: Catalog could not be loaded
    - 503: Model initialization failed
    """
    try:
        catalog = get_catalog()
    except CatalogError as e:
        return create_error_response(e.error_code, e.message, e.suggestion, status_code=500)

    try:
        result = get_engine().precompute(catalog)
    except ModelInitializationError as e:
        return create_error_response(
            e.error_code,
            e.message,
            e.suggestion,
            {'failures': e.failures} if e.failures else None,
            status_code=503
        )

    return jsonify({
        'status': 'success',
        'result': result.to_dict()
    }), 200

@app.route('/api/products/match', methods=['POST'])
def match_products():
    """
    Find catalog products visually similar to a query image.

    JSON body:
    - image_url: http(s) URL or data:image URI (required)
    - threshold: Minimum similarity 0-1 (optional, default: 0.1)
    - relaxed_threshold: Threshold used when nothing passes (optional, default: 0.05)
    - limit: Maximum number of results (optional, default: all)
    - category: Only match against this category (optional)

    Multipart form:
    - image: Image file (jpg, jpeg, png, webp), same optional fields as form values

    Returns:
    - 200: Ranked results; degraded=true when fallback scores were used
    - 400: Validation error
    - 500: Catalog could not be loaded
    """
    if 'image' in request.files:
        file = request.files['image']
        if not file.filename:
            return create_error_response(
                'MISSING_FILE',
                'No file selected',
                'Select an image file to upload',
                status_code=400
            )
        if not allowed_file(file.filename):
            return create_error_response(
                'INVALID_FORMAT',
                'Unsupported file type',
                f'Upload one of: {", ".join(sorted(ALLOWED_EXTENSIONS))}',
                status_code=400
            )
        image_ref = file.read()
        if not image_ref:
            return create_error_response('EMPTY_FILE', 'Uploaded file is empty', status_code=400)
        data = request.form
    else:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return create_error_response(
                'MISSING_BODY',
                'Request body is required',
                'Send JSON body with image_url or upload an image file',
                status_code=400
            )

        image_ref, error = validate_image_reference_param(data.get('image_url'))
        if error:
            return create_error_response(
                'INVALID_IMAGE_REFERENCE',
                error,
                'Please provide a valid HTTP URL or data URL.',
                status_code=400
            )

    engine = get_engine()

    threshold, error = validate_threshold(data.get('threshold', engine.min_similarity), 'threshold')
    if error:
        return create_error_response('INVALID_THRESHOLD', error, status_code=400)

    relaxed, error = validate_threshold(data.get('relaxed_threshold', engine.relaxed_similarity), 'relaxed_threshold')
    if error:
        return create_error_response('INVALID_THRESHOLD', error, status_code=400)

    limit = None
    if data.get('limit') is not None:
        limit, error = validate_limit(data.get('limit'))
        if error:
            return create_error_response('INVALID_LIMIT', error, status_code=400)

    category, error = validate_category(data.get('category'))
    if error:
        return create_error_response('INVALID_CATEGORY', error, status_code=400)

    try:
        catalog = filter_by_category(get_catalog(), category)
    except CatalogError as e:
        return create_error_response(e.error_code, e.message, e.suggestion, status_code=500)

    response = engine.match(image_ref, catalog, min_similarity=threshold, relaxed_similarity=relaxed)
    total = len(response['results'])
    if limit is not None:
        response['results'] = response['results'][:limit]

    logger.info(
        f"[MATCH] {total} results (returned {len(response['results'])}), "
        f"degraded={response['degraded']}, threshold={response['threshold_used']}"
    )

    response['status'] = 'success'
    response['total_results'] = total
    return jsonify(response), 200

@app.route('/api/cache/stats', methods=['GET'])
def get_cache_stats():
    """Embedding cache sizes and hit/miss counters"""
    return jsonify(get_engine().status()['caches']), 200

@app.route('/api/cache/clear', methods=['POST'])
def clear_cache():
    """
    Clear embedding caches.

    JSON body (optional):
    - target: 'all', 'images' or 'products' (default: 'all')

    Returns:
    - 200: Caches cleared
    - 400: Invalid target
    """
    data = request.get_json(silent=True) or {}
    target, error = validate_cache_target(data.get('target'))
    if error:
        return create_error_response('INVALID_TARGET', error, status_code=400)

    engine = get_engine()
    if target in ('all', 'images'):
        engine.image_cache.clear()
    if target in ('all', 'products'):
        engine.product_cache.clear()

    logger.info(f"Cleared embedding cache: {target}")
    return jsonify({
        'status': 'success',
        'cleared': target,
        'caches': engine.status()['caches']
    }), 200


# Error handlers for common HTTP errors
@app.errorhandler(404)
def not_found(error):
    return create_error_response(
        'NOT_FOUND',
        'Endpoint not found',
        'Check the API documentation for valid endpoints',
        status_code=404
    )

@app.errorhandler(405)
def method_not_allowed(error):
    return create_error_response(
        'METHOD_NOT_ALLOWED',
        'HTTP method not allowed for this endpoint',
        'Check the API documentation for allowed methods',
        status_code=405
    )

@app.errorhandler(500)
def internal_error(error):
    logger.error(f"Internal server error: {error}")
    return create_error_response(
        'INTERNAL_ERROR',
        'Internal server error',
        'Please try again or contact support',
        status_code=500
    )


if __name__ == '__main__':
    app.run(host='127.0.0.1', port=5000, debug=True)
