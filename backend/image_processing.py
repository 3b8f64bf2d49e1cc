"""
Image reference handling for visual product matching.

An image reference is either an http(s) URL or a data URI. Raw uploaded
bytes are converted to a data URI so that every image flows through the
engine the same way and can be cached under a single key.

Error Handling:
- Every failure is raised as an ImageProcessingError subclass carrying
  message, error_code and suggestion (see to_dict() for API responses)
- Remote pre-checks are advisory and never raise
"""

import base64
import binascii
import hashlib
import io
import logging
import re
from typing import Optional, Tuple
from urllib.parse import unquote_to_bytes

import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# Formats the CLIP preprocessing handles reliably
ALLOWED_FORMATS = {'JPEG', 'PNG', 'WEBP'}

DEFAULT_FETCH_TIMEOUT = 15.0
DEFAULT_PRECHECK_TIMEOUT = 5.0

REQUEST_HEADERS = {'User-Agent': 'visual-product-match/1.0'}

_DATA_URI_PATTERN = re.compile(r'^data:(?P<mime>[^;,]*)(?P<params>(?:;[^;,]*)*),(?P<payload>.*)$', re.DOTALL)

_INACCESSIBLE_KEYWORDS = ('not accessible', '404', 'cors', 'network', 'fetch', 'connection', 'timed out', 'timeout')
_FORMAT_KEYWORDS = ('pixel_values', 'missing inputs', 'cannot identify', 'invalid', 'format', 'truncated')


class ImageProcessingError(Exception):
    """Base exception for image processing errors"""
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


class InvalidImageReferenceError(ImageProcessingError):
    """Raised when an image reference is neither a data URI nor an http(s) URL"""
    def __init__(self, message: str, suggestion: str = None):
        super().__init__(
            message,
            'INVALID_IMAGE_REFERENCE',
            suggestion or 'Please provide a valid HTTP URL or data URL.'
        )


class ImageInaccessibleError(ImageProcessingError):
    """Raised when a remote image cannot be fetched"""
    def __init__(self, message: str, suggestion: str = None):
        super().__init__(
            message,
            'IMAGE_INACCESSIBLE',
            suggestion or 'Image URL is not accessible. Please check the URL or upload the image directly.'
        )


class ImageFormatUnsupportedError(ImageProcessingError):
    """Raised when image data cannot be decoded or has an unsupported format"""
    def __init__(self, message: str, suggestion: str = None):
        super().__init__(
            message,
            'IMAGE_FORMAT_UNSUPPORTED',
            suggestion or 'Invalid image format. Please use JPEG, PNG, or WebP images.'
        )


class ImageProcessingFailedError(ImageProcessingError):
    """Raised when the model returns unusable output for an image"""
    def __init__(self, message: str, suggestion: str = None):
        super().__init__(
            message,
            'PROCESSING_FAILED',
            suggestion or 'Failed to process image. Please try a different image.'
        )


class ExtractionExhaustedError(ImageProcessingError):
    """Raised when feature extraction keeps failing after all retries"""
    def __init__(self, message: str, attempts: int = 0, suggestion: str = None):
        self.attempts = attempts
        super().__init__(
            message,
            'EXTRACTION_EXHAUSTED',
            suggestion or 'Please try with a different image or check the image URL.'
        )


def is_data_uri(image_ref) -> bool:
    return isinstance(image_ref, str) and image_ref[:5].lower() == 'data:'


def is_image_data_uri(image_ref) -> bool:
    return isinstance(image_ref, str) and image_ref[:11].lower() == 'data:image/'


def is_http_url(image_ref) -> bool:
    return isinstance(image_ref, str) and image_ref[:8].lower().startswith(('http://', 'https://'))


def validate_image_reference(image_ref) -> str:
    """
    Validate that an image reference can be handed to the model.

    Args:
        image_ref: data:image URI or http(s) URL

    Returns:
        The reference unchanged

    Raises:
        InvalidImageReferenceError: If the reference is empty, not a string,
            or uses an unsupported scheme
    """
    if not image_ref or not isinstance(image_ref, str):
        raise InvalidImageReferenceError('Invalid image URL provided')

    if not is_image_data_uri(image_ref) and not is_http_url(image_ref):
        raise InvalidImageReferenceError(
            'Invalid image URL format. Please provide a valid HTTP URL or data:image URL.'
        )

    return image_ref


def describe_reference(image_ref) -> str:
    """Short form of a reference for log lines (data URIs can be megabytes)"""
    if is_data_uri(image_ref):
        return f"{image_ref[:30]}... ({len(image_ref)} chars)"
    return str(image_ref)


def image_cache_key(image_ref: str) -> str:
    """
    Cache key for an image reference.

    URLs are their own key. Data URIs are content-addressed so that large
    uploads are not kept twice (once as key, once as payload).
    """
    if is_data_uri(image_ref):
        return 'sha256:' + hashlib.sha256(image_ref.encode('utf-8')).hexdigest()
    return image_ref


def _open_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except UnidentifiedImageError:
        raise ImageFormatUnsupportedError('Cannot identify image data. Please use JPEG, PNG, or WebP images.')
    except (OSError, ValueError) as e:
        raise ImageFormatUnsupportedError(f'Image data is corrupted or truncated: {e}')

    if image.format not in ALLOWED_FORMATS:
        raise ImageFormatUnsupportedError(
            f'Unsupported image format: {image.format or "unknown"}'
        )
    return image


def bytes_to_data_uri(data: bytes) -> str:
    """
    Convert uploaded image bytes to a data URI.

    Raises:
        InvalidImageReferenceError: If no bytes were provided
        ImageFormatUnsupportedError: If the bytes are not a supported image
    """
    if not data:
        raise InvalidImageReferenceError('Uploaded image is empty')

    image = _open_image(data)
    mime_type = Image.MIME.get(image.format, 'application/octet-stream')
    encoded = base64.b64encode(data).decode('ascii')
    return f'data:{mime_type};base64,{encoded}'


def decode_data_uri(image_ref: str) -> bytes:
    """Decode the payload of a data URI"""
    match = _DATA_URI_PATTERN.match(image_ref)
    if not match:
        raise InvalidImageReferenceError('Malformed data URL')

    payload = match.group('payload')
    if ';base64' in match.group('params'):
        try:
            return base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as e:
            raise InvalidImageReferenceError(f'Malformed base64 payload in data URL: {e}')
    return unquote_to_bytes(payload)


def fetch_image_bytes(url: str, timeout: float = DEFAULT_FETCH_TIMEOUT) -> bytes:
    """
    Download a remote image.

    Raises:
        ImageInaccessibleError: On HTTP errors, network errors and timeouts
    """
    try:
        response = requests.get(url, headers=REQUEST_HEADERS, timeout=timeout, stream=True)
        response.raise_for_status()
        return response.content
    except requests.exceptions.HTTPError as e:
        raise ImageInaccessibleError(f'Image not accessible: {_status_of(e)}')
    except requests.exceptions.Timeout:
        raise ImageInaccessibleError(f'Timed out fetching image after {timeout}s')
    except requests.exceptions.ConnectionError as e:
        raise ImageInaccessibleError(f'Network error while fetching image: {e}')
    except requests.exceptions.RequestException as e:
        raise ImageInaccessibleError(f'Failed to fetch image: {e}')


def _status_of(error: requests.exceptions.HTTPError) -> str:
    response = error.response
    if response is None:
        return str(error)
    return f'{response.status_code} {response.reason or ""}'.strip()


def load_image(image_ref: str, timeout: float = DEFAULT_FETCH_TIMEOUT) -> Image.Image:
    """
    Load an image reference into an RGB PIL image.

    Args:
        image_ref: Data URI or http(s) URL
        timeout: Timeout for remote downloads in seconds

    Returns:
        PIL image in RGB mode
    """
    validate_image_reference(image_ref)

    if is_data_uri(image_ref):
        data = decode_data_uri(image_ref)
    else:
        data = fetch_image_bytes(image_ref, timeout=timeout)

    return _open_image(data).convert('RGB')


def check_remote_image(url: str, timeout: float = DEFAULT_PRECHECK_TIMEOUT) -> Tuple[bool, Optional[str]]:
    """
    Lightweight HEAD request to see if a URL points at an image.

    This is advisory only: some servers reject HEAD requests for images
    that download fine, so callers log the reason and continue.

    Returns:
        Tuple of (ok, reason) where reason explains a failed check
    """
    try:
        response = requests.head(url, headers=REQUEST_HEADERS, timeout=timeout, allow_redirects=True)
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        return False, f'Image not accessible: {_status_of(e)}'
    except requests.exceptions.Timeout:
        return False, f'Pre-check timed out after {timeout}s'
    except requests.exceptions.RequestException as e:
        return False, f'Network error: {e}'

    content_type = response.headers.get('Content-Type', '')

    if not content_type or not content_type.startswith('image/'):
        return False, f'URL does not point to a valid image file (Content-Type: {content_type or "missing"})'

    return True, None


def classify_extraction_error(error: Exception, attempts: int) -> ImageProcessingError:
    """
    Map the last failure of a retried extraction to a classified error.

    Already-classified reference errors pass through. Anything else is
    matched on its message, falling back to ExtractionExhaustedError.
    """
    if isinstance(error, (ImageInaccessibleError, ImageFormatUnsupportedError, InvalidImageReferenceError)):
        return error

    message = str(error)
    lowered = message.lower()

    if not isinstance(error, ImageProcessingError):
        if any(keyword in lowered for keyword in _INACCESSIBLE_KEYWORDS):
            return ImageInaccessibleError(f'Network error while processing image: {message}')

        if any(keyword in lowered for keyword in _FORMAT_KEYWORDS):
            return ImageFormatUnsupportedError(f'Image preprocessing failed: {message}')

    return ExtractionExhaustedError(
        f'Failed to process image after {attempts} attempts: {message}',
        attempts=attempts
    )
