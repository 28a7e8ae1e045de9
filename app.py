"""
Flask Application Factory - Main Entry Point

Builds the permission service application: configuration, structured logging,
database, error handlers, the permission services extension and the
blueprints.

Key Features:
- Application factory pattern with environment-specific configuration
- Environment variable management through python-dotenv
- Trusted-header authentication hook populating ``g.user_id``
- Flask-SQLAlchemy storage for role assignments
- Permission checker with per-application decision cache
- structlog request context and Prometheus metrics

Example:
    from app import create_app
    app = create_app('development')
    app.run(debug=True)
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, g, request
from werkzeug.middleware.proxy_fix import ProxyFix

from blueprints import register_blueprints
from config import get_config
from models import create_all_tables, db, init_database
from services.base_service import RegistryConfigurationError
from services.extension import PermissionServices
from utils.error_handling import init_error_handling
from utils.logging import get_logger, init_logging

logger = get_logger(__name__)


class FlaskApplicationError(Exception):
    """Raised when application initialization fails."""

    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


def load_environment_variables() -> bool:
    """
    Load environment variables from .env files using python-dotenv.

    Existing environment variables are never overridden.

    Returns:
        bool: False when critical variables are missing in production

    Environment Search Order:
        1. .env (default environment settings)
        2. .env.{FLASK_ENV} (environment-specific settings)
        3. .env.local (local overrides)
    """
    flask_env = os.environ.get('FLASK_ENV', 'development')
    env_files = ['.env', f'.env.{flask_env}', '.env.local']

    loaded_files = []
    for env_file in env_files:
        if Path(env_file).exists():
            load_dotenv(env_file, override=False)
            loaded_files.append(env_file)

    if loaded_files:
        logger.info("environment_loaded", files=loaded_files)

    missing_vars = [var for var in ('SECRET_KEY', 'DATABASE_URL') if not os.environ.get(var)]
    if missing_vars:
        logger.warning("environment_variables_missing", missing=missing_vars)
        if flask_env == 'production':
            return False
    return True


def configure_authentication(app: Flask) -> None:
    """
    Copy the upstream-authenticated user id into ``g.user_id``.

    The header named by AUTH_USER_HEADER is trusted; token verification
    happens before requests reach this service. Must be registered before
    the logging hook so log context carries the user id.
    """
    header_name = app.config['AUTH_USER_HEADER']

    @app.before_request
    def load_authenticated_user():
        user_id = request.headers.get(header_name, '').strip()
        g.user_id = user_id or None


def configure_request_context(app: Flask) -> None:
    """Response headers and database session cleanup."""

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        if g.get('request_id'):
            response.headers['X-Request-ID'] = g.request_id
        return response

    @app.teardown_appcontext
    def cleanup_database_session(error):
        if error is not None:
            db.session.rollback()
        db.session.remove()


def create_app(config_name: Optional[str] = None,
               permission_services: Optional[PermissionServices] = None) -> Flask:
    """
    Flask application factory.

    Args:
        config_name: 'development', 'testing', 'staging' or 'production';
            defaults to the FLASK_CONFIG environment variable
        permission_services: Pre-built extension, e.g. with a custom checker

    Returns:
        Flask: Configured application

    Raises:
        FlaskApplicationError: If critical application initialization fails
    """
    if not load_environment_variables():
        raise FlaskApplicationError(
            "Critical environment variables missing",
            error_code="ENVIRONMENT_INCOMPLETE"
        )

    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    config_class = get_config(config_name)
    app.config.from_object(config_class)
    config_class.init_app(app)

    configure_authentication(app)
    init_logging(app)
    init_database(app)
    init_error_handling(app)
    configure_request_context(app)

    try:
        (permission_services or PermissionServices()).init_app(app)
    except RegistryConfigurationError as e:
        raise FlaskApplicationError(
            f"Failed to initialize permission services: {e}",
            error_code="PERMISSION_SERVICES_INIT_FAILED"
        ) from e

    register_blueprints(app)
    create_all_tables(app)

    logger.info(
        "application_created",
        app_name=app.config['APP_NAME'],
        config=config_class.__name__,
    )
    return app
