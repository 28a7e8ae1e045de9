"""
Flask-SQLAlchemy Database Initialization Module

This module provides centralized database configuration, model imports and
Flask application integration for the role assignment store.

Key Features:
- Shared Flask-SQLAlchemy database instance
- Centralized model imports for the Flask application factory pattern
- Database initialization and table creation helpers
- Connection health check for readiness probes
"""

from typing import Any, Dict

from flask import Flask
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from utils.logging import get_logger

from .base import AuditMixin, BaseModel, db
from .rbac import RoleAssignmentRecord

logger = get_logger(__name__)

__all__ = [
    'db',
    'AuditMixin',
    'BaseModel',
    'RoleAssignmentRecord',
    'init_database',
    'create_all_tables',
    'drop_all_tables',
    'check_database_health',
]


def init_database(app: Flask) -> None:
    """
    Initialize Flask-SQLAlchemy with the application configuration.

    Args:
        app: Flask application instance
    """
    db.init_app(app)
    logger.info(
        "Database initialized",
        engine_options=sorted(app.config.get('SQLALCHEMY_ENGINE_OPTIONS', {}).keys()),
    )


def create_all_tables(app: Flask) -> None:
    """
    Create all database tables defined in models.

    Args:
        app: Flask application instance

    Raises:
        SQLAlchemyError: If table creation fails
    """
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            logger.error("Table creation failed", error=str(e))
            raise
    logger.info("All database tables created successfully")


def drop_all_tables(app: Flask) -> None:
    """Drop every table. Only meant for test teardown."""
    with app.app_context():
        db.drop_all()


def check_database_health() -> Dict[str, Any]:
    """
    Run a trivial query against the configured database.

    Returns:
        Dict containing 'healthy' and, on failure, the error message
    """
    try:
        db.session.execute(text('SELECT 1')).scalar()
        return {'healthy': True}
    except SQLAlchemyError as e:
        logger.error("Database health check failed", error=str(e))
        return {'healthy': False, 'error': str(e)}
