"""
Structured Logging Utilities for the Access-Control Service

This module configures structlog for the Flask application and provides the
helpers the permission core and route handlers use to emit audit and security
events. Events are snake_case names with key/value context; request metadata
(request id, correlation id, authenticated user) is bound through structlog
context variables so every entry written while serving a request carries it.

Key Features:
- structlog configuration with console output in debug and JSON otherwise
- Request correlation through structlog.contextvars
- Access decision audit events (internal reasons are logged, never returned)
- Security event logging for denied and undeterminable decisions
- Flask application factory integration via init_logging()
"""

import logging
import sys
import uuid
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from flask import Flask, g, has_request_context, request


class LogCategory(Enum):
    """Log categories for routing and filtering."""
    APPLICATION = "application"
    SECURITY = "security"
    AUDIT = "audit"
    INFRASTRUCTURE = "infrastructure"


class SecurityEventType(Enum):
    """Security event types emitted by the access-control layer."""
    AUTHENTICATION_MISSING = "authn_missing"
    AUTHORIZATION_FAILURE = "authz_failure"
    AUTHORIZATION_UNDETERMINABLE = "authz_undeterminable"
    ROLE_ASSIGNMENT_CHANGE = "role_assignment_change"
    REGISTRY_DEFECT = "registry_defect"


def _add_flask_context(logger, name, event_dict):
    """Add Flask request context to log entries."""
    if has_request_context():
        event_dict.setdefault('method', request.method)
        event_dict.setdefault('endpoint', request.endpoint)
        event_dict.setdefault('path', request.path)
    return event_dict


def configure_structlog(level: str = 'INFO', json_output: bool = True) -> None:
    """
    Configure structlog processors, renderer and level filtering.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ...)
        json_output: Render JSON lines when True, colored console output otherwise
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_flask_context,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


def get_logger(name: Optional[str] = None):
    """Get a structlog bound logger."""
    return structlog.get_logger(name)


logger = get_logger(__name__)


def log_access_decision(user_id: str, permission: str, granted: bool,
                        reason: Optional[str] = None, cached: bool = False,
                        **context: Any) -> None:
    """
    Record an access decision for audit.

    The reason is diagnostic only and stays in the logs; callers receive a
    generic denial.
    """
    logger.debug(
        "access_decision",
        category=LogCategory.AUDIT.value,
        user_id=user_id,
        permission=permission,
        granted=granted,
        reason=reason,
        cached=cached,
        **context
    )


def log_security_event(event_type: SecurityEventType, message: str,
                       severity: str = 'warning', **details: Any) -> None:
    """
    Log a security event at the requested severity.

    Args:
        event_type: Security event classification
        message: Human-readable description
        severity: Log method name (info, warning, error, critical)
        **details: Additional structured context
    """
    log_method = getattr(logger, severity, logger.warning)
    log_method(
        "security_event",
        category=LogCategory.SECURITY.value,
        event_type=event_type.value,
        description=message,
        **details
    )


def _setup_request_context() -> None:
    """Bind request identifiers to structlog context variables."""
    g.request_id = str(uuid.uuid4())
    g.correlation_id = request.headers.get('X-Correlation-ID') or g.request_id

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=g.request_id,
        correlation_id=g.correlation_id,
        user_id=g.get('user_id'),
    )


def _cleanup_request_context(exception: Optional[BaseException] = None) -> None:
    structlog.contextvars.clear_contextvars()


def init_logging(app: Flask) -> None:
    """
    Initialize structured logging for the Flask application factory.

    Must be registered after the authentication hook so the bound context
    includes the authenticated user id.

    Args:
        app: Flask application instance
    """
    configure_structlog(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        json_output=app.config.get('LOG_JSON', not app.debug),
    )

    app.before_request(_setup_request_context)
    app.teardown_request(_cleanup_request_context)

    logger.info(
        "structured_logging_initialized",
        category=LogCategory.INFRASTRUCTURE.value,
        log_level=app.config.get('LOG_LEVEL', 'INFO'),
    )


def describe_request() -> Dict[str, Any]:
    """Summarize the current request for security events."""
    if not has_request_context():
        return {}
    return {
        'method': request.method,
        'path': request.path,
        'remote_addr': request.remote_addr,
        'user_id': g.get('user_id'),
    }
