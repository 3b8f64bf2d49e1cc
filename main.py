"""
Visual Product Match - API launcher
Starts the Flask backend and warms the model and catalog embeddings in the background
"""
import threading
import sys
import os
import logging
import platform

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'backend'))

from app import app, get_catalog
from catalog import CatalogError
from model_manager import ModelInitializationError
from product_matching import get_engine

logger = logging.getLogger(__name__)

def warm_up():
    """Load the model and pre-compute catalog embeddings so the first match is fast"""
    engine = get_engine()
    try:
        engine.ensure_ready()
        result = engine.precompute(get_catalog())
        logger.info(f"Warm-up complete: {result.success_count} products cached, {result.failure_count} failed")
    except ModelInitializationError as e:
        logger.warning(f"Model warm-up failed ({e.error_code}): {e.message}. Matching will use fallback scores until reload.")
    except CatalogError as e:
        logger.warning(f"Catalog warm-up failed: {e.message}")

def main():
    """Main application entry point"""
    # macOS uses port 5001 to avoid AirPlay Receiver conflict on port 5000
    default_port = 5001 if platform.system() == 'Darwin' else 5000
    port = int(os.environ.get('PORT', default_port))
    host = os.environ.get('HOST', '127.0.0.1')

    if os.environ.get('SKIP_WARMUP', '').lower() not in ('1', 'true', 'yes'):
        threading.Thread(target=warm_up, name='warm-up', daemon=True).start()

    app.run(host=host, port=port, debug=False, use_reloader=False)

if __name__ == '__main__':
    main()
