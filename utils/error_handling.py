"""
Flask error handlers for the access-control service.

Every error leaves the application as a JSON body of the form
``{'error', 'message', 'status_code'}``. Denials are answered with a generic
403 body; decisions that could not be made (AccessControlError) are answered
with a generic 500 so operators can tell an outage from a denial, while the
specific cause is only logged.
"""

from typing import Any, Dict, Optional

from flask import Flask, jsonify
from marshmallow import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from models import db
from services.base_service import (
    AccessControlError,
    BulkLimitExceededError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from utils.logging import SecurityEventType, describe_request, get_logger, log_security_event

logger = get_logger(__name__)

# Bodies that never reveal why access was refused
GENERIC_MESSAGES = {
    401: 'Authentication required',
    403: 'Access denied',
}


def error_response(status_code: int, error: str, message: str,
                   error_code: Optional[str] = None, **extra: Any):
    """Build the JSON error body and status tuple returned by every handler."""
    body: Dict[str, Any] = {
        'error': error,
        'message': message,
        'status_code': status_code,
    }
    if error_code:
        body['error_code'] = error_code
    body.update(extra)
    return jsonify(body), status_code


def _rollback_session() -> None:
    try:
        db.session.rollback()
    except SQLAlchemyError as e:
        logger.error("session_rollback_failed", error=str(e))


def init_error_handling(app: Flask) -> None:
    """
    Register JSON error handlers on the application.

    Args:
        app: Flask application instance
    """

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        status_code = error.code or 500
        if status_code == 401:
            log_security_event(
                SecurityEventType.AUTHENTICATION_MISSING,
                GENERIC_MESSAGES[401],
                **describe_request()
            )
        message = GENERIC_MESSAGES.get(status_code, error.description)
        return error_response(status_code, error.name, message)

    @app.errorhandler(SchemaValidationError)
    def handle_schema_validation_error(error: SchemaValidationError):
        logger.info("request_validation_failed", errors=error.messages)
        return error_response(
            400, 'Bad Request', 'Request validation failed',
            error_code='VALIDATION_ERROR', details=error.messages,
        )

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        _rollback_session()
        logger.info("service_validation_failed", error=error.message)
        return error_response(400, 'Bad Request', error.message, error_code=error.error_code)

    @app.errorhandler(NotFoundError)
    def handle_not_found(error: NotFoundError):
        return error_response(404, 'Not Found', error.message, error_code=error.error_code)

    @app.errorhandler(BulkLimitExceededError)
    def handle_bulk_limit(error: BulkLimitExceededError):
        return error_response(
            400, 'Bad Request', error.message,
            error_code=error.error_code, limit=error.limit,
        )

    @app.errorhandler(AccessControlError)
    def handle_undeterminable(error: AccessControlError):
        _rollback_session()
        log_security_event(
            SecurityEventType.AUTHORIZATION_UNDETERMINABLE,
            "Access decision could not be made; failing closed",
            severity='error',
            error=error.message,
            error_code=error.error_code,
            cause=str(error.cause) if error.cause else None,
            **describe_request()
        )
        return error_response(
            500, 'Internal Server Error',
            'Unable to determine access at this time',
            error_code='ACCESS_UNDETERMINABLE',
        )

    @app.errorhandler(ServiceError)
    def handle_service_error(error: ServiceError):
        _rollback_session()
        logger.error(
            "service_error",
            error=error.message,
            error_code=error.error_code,
            cause=str(error.cause) if error.cause else None,
        )
        return error_response(
            500, 'Internal Server Error', 'An unexpected error occurred',
            error_code=error.error_code,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        _rollback_session()
        logger.exception("unexpected_error", error=str(error))
        return error_response(500, 'Internal Server Error', 'An unexpected error occurred')
