"""Shared API key check for the HTTP routes."""

import os
import hmac
import logging
from functools import wraps
from flask import request, jsonify

logger = logging.getLogger(__name__)


def require_api_key(view):
    """Reject requests whose X-API-Key header does not match ROE_API_KEY.

    When ROE_API_KEY is unset the routes are open (local development).
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = os.environ.get('ROE_API_KEY', '')
        if expected:
            provided = request.headers.get('X-API-Key', '')
            if not hmac.compare_digest(provided, expected):
                logger.warning(f"Rejected request to {request.path}: bad API key")
                return jsonify({'error': 'invalid or missing API key'}), 401
        return view(*args, **kwargs)
    return wrapper
