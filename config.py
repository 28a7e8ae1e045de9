"""
Flask Configuration Management

Environment-specific configuration classes for the permission service. Every
value can be overridden through environment variables, loaded from .env files
by the application factory via python-dotenv.

The configuration covers:
- Database connection for persisted role assignments (SQLAlchemy URI format)
- Trusted authentication header set by the upstream identity layer
- Permission decision cache (enabled flag and TTL in seconds)
- Bulk permission check limit
- Optional JSON permission registry replacing the built-in catalog
- Maximum lifetime of temporary role grants
- Structured logging level and output format
"""

import os
import logging
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """
    Base configuration class containing common settings for all environments.

    Environment-specific classes inherit from this class and override only
    what differs.
    """

    # Flask Core Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-key-change-in-production'
    APP_NAME = os.environ.get('APP_NAME', 'permission-service')

    # Database Configuration
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'postgresql://localhost:5432/permissions_dev'

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,              # Validate connections before use
        'pool_recycle': 3600,
        'connect_args': {
            'connect_timeout': 10,
            'application_name': 'permission_service'
        }
    }

    # Authentication - user id injected by the upstream identity layer
    AUTH_USER_HEADER = os.environ.get('AUTH_USER_HEADER', 'X-Authenticated-User')

    # Permission Checker Configuration
    PERMISSION_CACHE_ENABLED = _env_bool('PERMISSION_CACHE_ENABLED', 'true')
    PERMISSION_CACHE_TTL = int(os.environ.get('PERMISSION_CACHE_TTL', '300'))
    PERMISSION_BULK_CHECK_LIMIT = int(os.environ.get('PERMISSION_BULK_CHECK_LIMIT', '100'))
    PERMISSION_REGISTRY_PATH = os.environ.get('PERMISSION_REGISTRY_PATH')

    # Role Assignment Configuration
    ROLE_MAX_TEMPORARY_DAYS = int(os.environ.get('ROLE_MAX_TEMPORARY_DAYS', '30'))

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_JSON = _env_bool('LOG_JSON', 'true')

    @staticmethod
    def init_app(app):
        """
        Initialize application with configuration-specific settings.

        Called after the Flask application is created and configured;
        subclasses override it for environment-specific initialization.

        Args:
            app: Flask application instance
        """
        pass

    @classmethod
    def validate_required_config(cls) -> bool:
        """
        Validate that all required configuration variables are set.

        Returns:
            bool: True if all required configuration is valid, False otherwise
        """
        required_vars = ['SECRET_KEY', 'SQLALCHEMY_DATABASE_URI', 'AUTH_USER_HEADER']

        for var in required_vars:
            value = getattr(cls, var)
            if not value or (isinstance(value, str) and value == 'dev-key-change-in-production'):
                logging.warning(f"Configuration warning: {var} not properly set")
                return False

        if cls.PERMISSION_CACHE_TTL < 0 or cls.PERMISSION_BULK_CHECK_LIMIT < 0:
            logging.warning("Configuration warning: permission limits must not be negative")
            return False

        return True


class DevelopmentConfig(Config):
    """
    Development environment configuration.

    Debug mode with human-readable console logs and a local database.
    """

    DEBUG = True
    TESTING = False

    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///permissions_dev.db'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SQLALCHEMY_ECHO = _env_bool('SQLALCHEMY_ECHO', 'false')

    LOG_LEVEL = 'DEBUG'
    LOG_JSON = _env_bool('LOG_JSON', 'false')

    @staticmethod
    def init_app(app):
        """Initialize development-specific settings."""
        Config.init_app(app)

        app.logger.info("Development configuration loaded")
        if not DevelopmentConfig.validate_required_config():
            app.logger.warning("Some configuration values are using defaults")


class TestingConfig(Config):
    """
    Testing environment configuration.

    In-memory SQLite so each application instance starts from an empty
    database.
    """

    TESTING = True
    DEBUG = False

    SQLALCHEMY_DATABASE_URI = os.environ.get('TEST_DATABASE_URL') or 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}

    LOG_LEVEL = 'WARNING'  # Reduce log noise during testing
    LOG_JSON = False

    @staticmethod
    def init_app(app):
        """Initialize testing-specific settings."""
        Config.init_app(app)
        app.logger.info("Testing configuration loaded")


class ProductionConfig(Config):
    """
    Production environment configuration.

    Requires a real SECRET_KEY and DATABASE_URL and emits JSON logs.
    """

    DEBUG = False
    TESTING = False

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 3600,
        'pool_size': int(os.environ.get('SQLALCHEMY_POOL_SIZE', '20')),
        'max_overflow': int(os.environ.get('SQLALCHEMY_MAX_OVERFLOW', '30')),
        'pool_timeout': int(os.environ.get('SQLALCHEMY_POOL_TIMEOUT', '30')),
        'connect_args': {
            'sslmode': 'require',
            'connect_timeout': 10,
            'application_name': 'permission_service_prod'
        }
    }

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_JSON = True

    @staticmethod
    def init_app(app):
        """Initialize production-specific settings."""
        Config.init_app(app)

        if not ProductionConfig.validate_required_config():
            app.logger.error("Production configuration validation failed")
            raise RuntimeError("Invalid production configuration")

        if app.config['SECRET_KEY'] == 'dev-key-change-in-production':
            app.logger.error("Production SECRET_KEY not configured properly")
            raise RuntimeError("Production SECRET_KEY must be set")


class StagingConfig(ProductionConfig):
    """
    Staging environment configuration.

    Production settings with more verbose logging.
    """

    DEBUG = os.environ.get('STAGING_DEBUG', 'false').lower() == 'true'
    LOG_LEVEL = 'DEBUG'

    @staticmethod
    def init_app(app):
        """Initialize staging-specific settings."""
        ProductionConfig.init_app(app)
        app.logger.info('Flask application startup (Staging)')


# Configuration mapping for environment-based selection
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'staging': StagingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name: Optional[str] = None):
    """
    Get configuration class based on environment name.

    Args:
        config_name: Name of the configuration environment; defaults to the
            FLASK_CONFIG environment variable

    Returns:
        Configuration class for the specified environment
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_CONFIG', 'default')

    return config.get(config_name, DevelopmentConfig)
