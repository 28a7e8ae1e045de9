"""
Base Service Implementation for the Service Layer Pattern

This module provides the foundational service layer used by the access-control
core and the role-assignment lifecycle service: a shared exception taxonomy and
a BaseService with SQLAlchemy session injection and transaction boundaries.

Exception taxonomy:
- ServiceError: base for all service layer failures
- ValidationError: business rule violations in caller input
- NotFoundError: lookups for entities that do not exist
- DatabaseError: transaction and query failures
- AccessControlError: an access decision could not be made and must not be
  reported as a plain denial. Callers fail closed and surface it distinctly.
    - AssignmentStoreError: role assignment lookup failed
    - RegistryConfigurationError: permission registry is malformed
    - BulkLimitExceededError: bulk check request exceeded the configured limit
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import structlog
from flask import has_app_context
from sqlalchemy.exc import SQLAlchemyError

from models.base import db

logger = structlog.get_logger(__name__)


class ServiceError(Exception):
    """Base exception for service layer operations."""

    default_error_code = "SERVICE_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None,
                 cause: Optional[Exception] = None) -> None:
        """
        Initialize service error with comprehensive error information.

        Args:
            message: Human-readable error description
            error_code: Optional error code for programmatic handling
            cause: Optional underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)


class DatabaseError(ServiceError):
    """Database-specific service error for transaction and query failures."""
    default_error_code = "DATABASE_ERROR"


class ValidationError(ServiceError):
    """Business rule validation error for constraint violations."""
    default_error_code = "VALIDATION_ERROR"


class NotFoundError(ServiceError):
    """Resource not found error for entity lookup failures."""
    default_error_code = "NOT_FOUND"


class AccessControlError(ServiceError):
    """An access decision is undeterminable; callers must deny and report it."""
    default_error_code = "ACCESS_CONTROL_UNAVAILABLE"


class AssignmentStoreError(AccessControlError):
    """Role assignment store lookup failed (I/O error, timeout, bad rows)."""
    default_error_code = "ASSIGNMENT_STORE_ERROR"


class RegistryConfigurationError(AccessControlError):
    """Permission registry data failed validation."""
    default_error_code = "REGISTRY_CONFIGURATION_ERROR"


class BulkLimitExceededError(AccessControlError):
    """Bulk permission check exceeded the configured request limit."""
    default_error_code = "BULK_LIMIT_EXCEEDED"

    def __init__(self, limit: int, requested: int) -> None:
        super().__init__(f"Bulk check limit exceeded: {limit}")
        self.limit = limit
        self.requested = requested


class BaseService:
    """
    Base service class providing SQLAlchemy session injection and
    transaction boundaries.

    Services receive a session explicitly (tests, background jobs) or fall
    back to the Flask-SQLAlchemy scoped session inside an application context.

    Usage Example:
        class RoleAssignmentService(BaseService):
            def revoke_role(self, assignment_id, revoked_by):
                with self.transaction() as session:
                    record = session.get(RoleAssignmentRecord, assignment_id)
                    record.revoke(revoked_by)
    """

    def __init__(self, db_session: Optional[Any] = None) -> None:
        """
        Initialize base service with dependency injection of database session.

        Args:
            db_session: Optional database session. If None, uses the
                        Flask-SQLAlchemy session from the application context.

        Raises:
            RuntimeError: If no session provided and no application context
        """
        if db_session is not None:
            self.db_session = db_session
        elif has_app_context():
            self.db_session = db.session
        else:
            raise RuntimeError(
                f"Service {self.__class__.__name__} requires database session injection "
                "or Flask application context for session access"
            )
        self._service_name = self.__class__.__name__
        self.logger = structlog.get_logger(self.__class__.__module__)

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """
        Transaction boundary: commit on success, roll back and raise
        DatabaseError on SQLAlchemy failures.

        Non-database exceptions raised inside the block also roll back and
        propagate unchanged.
        """
        try:
            yield self.db_session
            self.db_session.commit()
        except SQLAlchemyError as e:
            self.db_session.rollback()
            self.logger.error(
                "transaction_rolled_back",
                service=self._service_name,
                error=str(e),
            )
            raise DatabaseError(
                f"{self._service_name} transaction failed",
                cause=e
            ) from e
        except Exception:
            self.db_session.rollback()
            raise
