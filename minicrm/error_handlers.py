# minicrm/error_handlers.py
import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from minicrm.errors import DomainError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(DomainError)
    def handle_domain_error(error):
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            f"{error.__class__.__name__}: {error.details}",
            extra={"path": request.path, "status_code": error.status_code, "code": error.code},
        )
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(400)
    def bad_request(e):
        logger.warning(f"Bad request: {e} - Path: {request.path}")
        return jsonify({
            "error": "Bad request",
            "details": "The request could not be understood or was missing required parameters.",
        }), 400

    @app.errorhandler(404)
    def not_found(e):
        logger.info(f"Not found: {request.path}")
        return jsonify({
            "error": "Not found",
            "details": "The requested resource was not found on the server.",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        logger.warning(f"Method not allowed: {request.method} {request.path}")
        return jsonify({
            "error": "Method not allowed",
            "details": f"The {request.method} method is not supported for this endpoint.",
        }), 405

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.name, "details": e.description}), e.code

    @app.errorhandler(Exception)
    def server_error(e):
        logger.exception(f"Unhandled error - Path: {request.path}")
        return jsonify({
            "error": "Server error",
            "details": "An internal server error occurred. Please try again later.",
        }), 500
