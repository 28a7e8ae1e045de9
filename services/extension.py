"""
Flask integration for the permission services.

PermissionServices follows the Flask extension pattern: it builds one
PermissionChecker per application from the app config and stores it in
``app.extensions``. Route handlers reach it through get_permission_checker()
and obtain a request-scoped RoleAssignmentService through
get_role_assignment_service().
"""

from typing import Callable, Optional

import structlog
from flask import Flask, current_app

from services.permission_checker import PermissionChecker, PermissionCheckerConfig
from services.permission_registry import PermissionRegistry, default_registry
from services.role_assignment_service import DEFAULT_MAX_TEMPORARY_DAYS, RoleAssignmentService
from services.role_assignment_store import SQLAlchemyRoleAssignmentStore

logger = structlog.get_logger(__name__)

EXTENSION_KEY = 'permission_services'


class PermissionServices:
    """
    Application-level holder of the permission checker.

    Usage Example:
        permission_services = PermissionServices()
        permission_services.init_app(app)
    """

    def __init__(self, app: Optional[Flask] = None,
                 checker: Optional[PermissionChecker] = None) -> None:
        self.checker = checker
        self.listeners = []
        self.max_temporary_days = DEFAULT_MAX_TEMPORARY_DAYS
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """
        Build the checker from configuration and register the extension.

        Raises:
            RegistryConfigurationError: If PERMISSION_REGISTRY_PATH points at
                an invalid registry
        """
        if self.checker is None:
            self.checker = PermissionChecker(
                SQLAlchemyRoleAssignmentStore(),
                registry=load_registry(app.config.get('PERMISSION_REGISTRY_PATH')),
                config=PermissionCheckerConfig.from_app_config(app.config),
            )
        self.max_temporary_days = int(
            app.config.get('ROLE_MAX_TEMPORARY_DAYS', DEFAULT_MAX_TEMPORARY_DAYS)
        )
        app.extensions[EXTENSION_KEY] = self

        logger.info(
            "permission_services_initialized",
            permissions=len(self.checker.registry),
            cache_enabled=self.checker.config.cache_enabled,
            cache_ttl=self.checker.config.cache_ttl,
            bulk_check_limit=self.checker.config.bulk_check_limit,
        )

    def add_invalidation_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callable notified with each user id whose roles changed."""
        self.listeners.append(listener)

    def role_assignment_service(self) -> RoleAssignmentService:
        return RoleAssignmentService(
            checker=self.checker,
            max_temporary_days=self.max_temporary_days,
            listeners=self.listeners,
        )


def load_registry(path: Optional[str]) -> PermissionRegistry:
    """The registry at ``path``, or the built-in catalog when no path is configured."""
    if path:
        logger.info("loading_permission_registry", path=path)
        return PermissionRegistry.from_json_file(path)
    return default_registry()


def _extension() -> PermissionServices:
    try:
        return current_app.extensions[EXTENSION_KEY]
    except KeyError:
        raise RuntimeError("PermissionServices has not been initialized for this application") from None


def get_permission_checker() -> PermissionChecker:
    return _extension().checker


def get_role_assignment_service() -> RoleAssignmentService:
    return _extension().role_assignment_service()
