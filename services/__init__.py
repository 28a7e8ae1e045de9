"""
Access-Control Service Package

Exports the permission evaluation core. Modules that depend on the ORM
(role_assignment_store, role_assignment_service, extension) are imported from
their own modules so that the model layer can import the value types defined
here without a cycle.

Key Components:
- permission_types: enums and immutable value objects
- PermissionRegistry: validated catalog of permissions and role edges
- ScopeResolver / ConditionEvaluator: per-edge scope and condition checks
- PermissionCache: per-user TTL cache of decisions
- PermissionChecker: decision orchestration used by route handlers
"""

from services.permission_types import (
    Action,
    ConditionType,
    Permission,
    PermissionCategory,
    PermissionCheck,
    PermissionCondition,
    PermissionResult,
    PermissionScope,
    ResourceContext,
    RolePermission,
    RoleStatus,
    UserRole,
    UserRoleAssignment,
)
from services.base_service import (
    AccessControlError,
    AssignmentStoreError,
    BaseService,
    BulkLimitExceededError,
    DatabaseError,
    NotFoundError,
    RegistryConfigurationError,
    ServiceError,
    ValidationError,
)
from services.permission_registry import PermissionRegistry, default_registry
from services.scope_resolver import ScopeResolver
from services.condition_evaluator import ConditionEvaluator
from services.permission_cache import PermissionCache
from services.permission_checker import PermissionChecker, PermissionCheckerConfig

__all__ = [
    'Action',
    'ConditionType',
    'Permission',
    'PermissionCategory',
    'PermissionCheck',
    'PermissionCondition',
    'PermissionResult',
    'PermissionScope',
    'ResourceContext',
    'RolePermission',
    'RoleStatus',
    'UserRole',
    'UserRoleAssignment',
    'AccessControlError',
    'AssignmentStoreError',
    'BaseService',
    'BulkLimitExceededError',
    'DatabaseError',
    'NotFoundError',
    'RegistryConfigurationError',
    'ServiceError',
    'ValidationError',
    'PermissionRegistry',
    'default_registry',
    'ScopeResolver',
    'ConditionEvaluator',
    'PermissionCache',
    'PermissionChecker',
    'PermissionCheckerConfig',
]
