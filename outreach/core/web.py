"""
Helpers shared by the JSON route modules.
"""

import logging

from flask import current_app, jsonify

from .errors import OutreachError
from .logging_service import LoggingService

logger = logging.getLogger(__name__)


def get_engine():
    """The Outreach extension registered on the current app."""
    return current_app.extensions['outreach']


def error_response(error, source):
    """Map an exception raised by an engine call to a JSON response."""
    if isinstance(error, OutreachError):
        if error.status_code >= 500:
            logger.error(f"[{source}] {error.message}")
            LoggingService.error(source, error.message, error.details)
        return jsonify(error.to_dict()), error.status_code

    logger.error(f"[{source}] Unexpected error: {error}")
    LoggingService.log_error_with_traceback(source, error)
    return jsonify({'error': str(error)}), 500
