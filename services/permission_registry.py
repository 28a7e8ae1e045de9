"""
Permission Registry

Static catalog of permissions and role → permission edges. The registry is
compiled configuration: it is validated once when constructed (malformed
entries raise RegistryConfigurationError at startup, never at request time)
and exposes read-only lookups afterwards.

A registry can be built from the built-in catalog (default_registry()) or
loaded from configuration data (PermissionRegistry.from_mapping /
from_json_file). Replacing the registry of a running PermissionChecker goes
through PermissionChecker.reload_registry(), which clears every cached
decision.
"""

import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog

from services.base_service import RegistryConfigurationError
from services.permission_types import (
    PERMISSION_NAME_PATTERN,
    ConditionType,
    Permission,
    PermissionCategory,
    PermissionCondition,
    PermissionScope,
    RolePermission,
    UserRole,
)
from utils.datetime import InvalidDateFormatError, parse_datetime

logger = structlog.get_logger(__name__)

TIME_WINDOW_PARAMETERS = ('start_time', 'end_time')


class PermissionRegistry:
    """
    Immutable lookup of permissions and role-permission edges.

    Lookups are dictionary based: permission by name, edges by role, and
    edges by (role, permission id).
    """

    def __init__(self, permissions: Iterable[Permission],
                 role_permissions: Iterable[RolePermission]) -> None:
        """
        Validate and index registry data.

        Args:
            permissions: Permission definitions
            role_permissions: Role → permission edges

        Raises:
            RegistryConfigurationError: If any entry is malformed or dangling
        """
        permissions = tuple(permissions)
        role_permissions = tuple(
            _normalize_edge(edge) for edge in role_permissions
        )

        by_name: Dict[str, Permission] = {}
        by_id: Dict[str, Permission] = {}
        for permission in permissions:
            _validate_permission(permission)
            if permission.name in by_name:
                raise RegistryConfigurationError(
                    f"Duplicate permission name '{permission.name}'"
                )
            if permission.id in by_id:
                raise RegistryConfigurationError(
                    f"Duplicate permission id '{permission.id}'"
                )
            by_name[permission.name] = permission
            by_id[permission.id] = permission

        by_role: Dict[UserRole, List[RolePermission]] = {role: [] for role in UserRole}
        by_role_permission: Dict[Tuple[UserRole, str], List[RolePermission]] = {}
        edge_ids = set()
        for edge in role_permissions:
            if edge.id in edge_ids:
                raise RegistryConfigurationError(f"Duplicate role permission id '{edge.id}'")
            edge_ids.add(edge.id)
            if edge.permission_id not in by_id:
                raise RegistryConfigurationError(
                    f"Role permission '{edge.id}' references unknown permission "
                    f"'{edge.permission_id}'"
                )
            by_role[edge.role].append(edge)
            by_role_permission.setdefault((edge.role, edge.permission_id), []).append(edge)

        self._permissions = permissions
        self._role_permissions = role_permissions
        self._by_name = MappingProxyType(by_name)
        self._by_id = MappingProxyType(by_id)
        self._by_role = MappingProxyType({role: tuple(edges) for role, edges in by_role.items()})
        self._by_role_permission = MappingProxyType(
            {key: tuple(edges) for key, edges in by_role_permission.items()}
        )

        logger.debug(
            "permission_registry_loaded",
            permissions=len(permissions),
            role_permissions=len(role_permissions),
        )

    # Lookups

    def get_permission(self, name: str) -> Optional[Permission]:
        """
        Exact, case-sensitive lookup by name.

        Returns None for unknown names; callers treat that as a denial.
        """
        return self._by_name.get(name)

    def get_permission_by_id(self, permission_id: str) -> Optional[Permission]:
        return self._by_id.get(permission_id)

    def get_role_permissions(self, role: Union[UserRole, str]) -> List[RolePermission]:
        """All edges for a role; empty for unknown roles or roles without grants."""
        try:
            role = UserRole(role)
        except ValueError:
            return []
        return list(self._by_role.get(role, ()))

    def get_role_permission_edges(self, role: UserRole,
                                  permission_id: str) -> Tuple[RolePermission, ...]:
        """Edges connecting ``role`` to one permission."""
        return self._by_role_permission.get((role, permission_id), ())

    def get_permissions_by_category(self, category: Union[PermissionCategory, str]) -> List[Permission]:
        category = PermissionCategory(category)
        return [p for p in self._permissions if p.category == category]

    def get_permissions_by_scope(self, scope: Union[PermissionScope, str]) -> List[Permission]:
        scope = PermissionScope(scope)
        return [p for p in self._permissions if p.scope == scope]

    def get_permissions_for_role(self, role: UserRole) -> List[Permission]:
        """Permissions reachable from a role, in catalog order."""
        granted_ids = {edge.permission_id for edge in self._by_role.get(role, ())}
        return [p for p in self._permissions if p.id in granted_ids]

    def all_permissions(self) -> List[Permission]:
        return list(self._permissions)

    def all_role_permissions(self) -> List[RolePermission]:
        return list(self._role_permissions)

    def roles(self) -> List[UserRole]:
        """Roles holding at least one edge, in role rank order."""
        return [role for role in UserRole if self._by_role.get(role)]

    def __len__(self) -> int:
        return len(self._permissions)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    # Loading

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'PermissionRegistry':
        """
        Build a registry from configuration data.

        Expected shape::

            {
                "permissions": [
                    {"name": "class.update", "category": "content",
                     "scope": "self", "description": "..."}
                ],
                "role_permissions": [
                    {"id": "teacher-class-update", "role": "teacher",
                     "permission_id": "class.update",
                     "conditions": [{"type": "resource_owner", "parameters": {}}]}
                ]
            }

        Raises:
            RegistryConfigurationError: If the data is malformed
        """
        if not isinstance(data, Mapping):
            raise RegistryConfigurationError("Registry configuration must be an object")

        try:
            permissions = [
                Permission(
                    name=entry['name'],
                    category=PermissionCategory(entry['category']),
                    scope=PermissionScope(entry['scope']),
                    description=entry.get('description', ''),
                    id=entry.get('id', ''),
                )
                for entry in data.get('permissions', [])
            ]
            role_permissions = [
                RolePermission(
                    id=entry['id'],
                    role=UserRole(entry['role']),
                    permission_id=entry['permission_id'],
                    conditions=[
                        PermissionCondition(
                            type=ConditionType(condition['type']),
                            parameters=condition.get('parameters') or {},
                        )
                        for condition in entry.get('conditions', [])
                    ],
                )
                for entry in data.get('role_permissions', [])
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RegistryConfigurationError(
                f"Invalid registry configuration: {e}", cause=e
            ) from e

        return cls(permissions, role_permissions)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> 'PermissionRegistry':
        """Load a registry from a JSON configuration file."""
        try:
            with open(path, 'r', encoding='utf-8') as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryConfigurationError(
                f"Unable to read permission registry from {path}: {e}", cause=e
            ) from e
        return cls.from_mapping(data)


def _validate_permission(permission: Permission) -> None:
    if not isinstance(permission.name, str) or not PERMISSION_NAME_PATTERN.match(permission.name):
        raise RegistryConfigurationError(
            f"Permission name {permission.name!r} is not in 'resource.action' form"
        )
    if not isinstance(permission.category, PermissionCategory):
        raise RegistryConfigurationError(
            f"Permission '{permission.name}' has invalid category {permission.category!r}"
        )
    if not isinstance(permission.scope, PermissionScope):
        raise RegistryConfigurationError(
            f"Permission '{permission.name}' has invalid scope {permission.scope!r}"
        )


def _normalize_edge(edge: RolePermission) -> RolePermission:
    """Validate an edge and parse time window parameters to aware datetimes."""
    if not isinstance(edge.role, UserRole):
        raise RegistryConfigurationError(f"Role permission '{edge.id}' has invalid role {edge.role!r}")

    conditions = []
    for condition in edge.conditions:
        if not isinstance(condition.type, ConditionType):
            raise RegistryConfigurationError(
                f"Role permission '{edge.id}' has unknown condition type {condition.type!r}"
            )
        if condition.type == ConditionType.TIME_BASED:
            parameters = dict(condition.parameters)
            for key in TIME_WINDOW_PARAMETERS:
                if parameters.get(key) is not None:
                    try:
                        parameters[key] = parse_datetime(parameters[key])
                    except InvalidDateFormatError as e:
                        raise RegistryConfigurationError(
                            f"Role permission '{edge.id}' has invalid {key}: {e}", cause=e
                        ) from e
            start, end = parameters.get('start_time'), parameters.get('end_time')
            if start is not None and end is not None and start > end:
                raise RegistryConfigurationError(
                    f"Role permission '{edge.id}' time window ends before it starts"
                )
            condition = PermissionCondition(type=condition.type, parameters=parameters)
        conditions.append(condition)

    return RolePermission(
        id=edge.id,
        role=edge.role,
        permission_id=edge.permission_id,
        conditions=conditions,
    )


# =============================================================================
# BUILT-IN CATALOG
# =============================================================================

_C = PermissionCategory
_S = PermissionScope

DEFAULT_PERMISSIONS: Tuple[Permission, ...] = (
    # Content management
    Permission('content.create', _C.CONTENT, _S.DEPARTMENT, 'Create new content'),
    Permission('content.read', _C.CONTENT, _S.SELF, 'View content'),
    Permission('content.update', _C.CONTENT, _S.SELF, 'Edit existing content'),
    Permission('content.delete', _C.CONTENT, _S.SELF, 'Delete content'),
    Permission('content.manage', _C.CONTENT, _S.DEPARTMENT, 'Full content management access'),

    # Class management
    Permission('class.create', _C.CONTENT, _S.DEPARTMENT, 'Create new classes'),
    Permission('class.read', _C.CONTENT, _S.INSTITUTION, 'View class information'),
    Permission('class.update', _C.CONTENT, _S.SELF, 'Edit class information'),
    Permission('class.delete', _C.CONTENT, _S.SELF, 'Delete classes'),
    Permission('class.manage', _C.CONTENT, _S.DEPARTMENT, 'Full class management access'),

    # Enrollment
    Permission('enrollment.create', _C.CONTENT, _S.SELF, 'Enroll in classes'),
    Permission('enrollment.read', _C.CONTENT, _S.SELF, 'View enrollment information'),
    Permission('enrollment.update', _C.CONTENT, _S.DEPARTMENT, 'Modify enrollment status'),
    Permission('enrollment.delete', _C.CONTENT, _S.DEPARTMENT, 'Remove enrollments'),
    Permission('enrollment.approve', _C.CONTENT, _S.DEPARTMENT, 'Approve enrollment requests'),

    # User management
    Permission('user.create', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Create new users'),
    Permission('user.read', _C.USER_MANAGEMENT, _S.DEPARTMENT, 'View user information'),
    Permission('user.update', _C.USER_MANAGEMENT, _S.SELF, 'Edit user information'),
    Permission('user.delete', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Delete users'),
    Permission('user.manage', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Full user management access'),

    # Role management
    Permission('role.assign', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Assign roles to users'),
    Permission('role.revoke', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Revoke user roles'),
    Permission('role.approve', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Approve role requests'),
    Permission('role.audit', _C.USER_MANAGEMENT, _S.INSTITUTION, 'View role audit logs'),

    # Analytics
    Permission('analytics.read', _C.ANALYTICS, _S.DEPARTMENT, 'View analytics data'),
    Permission('analytics.export', _C.ANALYTICS, _S.INSTITUTION, 'Export analytics data'),

    # System administration
    Permission('system.configure', _C.SYSTEM, _S.SYSTEM, 'Configure system settings'),
    Permission('system.audit', _C.SYSTEM, _S.SYSTEM, 'View system audit logs'),
    Permission('institution.create', _C.SYSTEM, _S.SYSTEM, 'Create new institutions'),
    Permission('institution.manage', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Manage institution settings'),

    # Department management
    Permission('department.create', _C.USER_MANAGEMENT, _S.INSTITUTION, 'Create new departments'),
    Permission('department.manage', _C.USER_MANAGEMENT, _S.DEPARTMENT, 'Manage department settings'),
)

_OWNER = (PermissionCondition(ConditionType.RESOURCE_OWNER),)
_DEPARTMENT = (PermissionCondition(ConditionType.DEPARTMENT_MATCH),)
_INSTITUTION = (PermissionCondition(ConditionType.INSTITUTION_MATCH),)


def _edges(role: UserRole, prefix: str,
           grants: Iterable[Tuple[str, Tuple[PermissionCondition, ...]]]) -> List[RolePermission]:
    return [
        RolePermission(
            id=f"{prefix}-{permission_id.replace('.', '-')}",
            role=role,
            permission_id=permission_id,
            conditions=conditions,
        )
        for permission_id, conditions in grants
    ]


DEFAULT_ROLE_PERMISSIONS: Tuple[RolePermission, ...] = tuple(
    _edges(UserRole.STUDENT, 'student', [
        ('content.read', ()),
        ('class.read', ()),
        ('enrollment.create', ()),
        ('enrollment.read', _OWNER),
        ('user.update', _OWNER),
    ])
    + _edges(UserRole.TEACHER, 'teacher', [
        ('content.create', _DEPARTMENT),
        ('content.read', ()),
        ('content.update', _OWNER),
        ('content.delete', _OWNER),
        ('class.create', _DEPARTMENT),
        ('class.read', ()),
        ('class.update', _OWNER),
        ('class.delete', _OWNER),
        ('enrollment.read', _DEPARTMENT),
        ('enrollment.update', _OWNER),
        ('enrollment.approve', _OWNER),
        ('user.read', _DEPARTMENT),
        ('analytics.read', _DEPARTMENT),
    ])
    + _edges(UserRole.DEPARTMENT_ADMIN, 'dept-admin', [
        ('content.manage', _DEPARTMENT),
        ('class.manage', _DEPARTMENT),
        ('enrollment.update', _DEPARTMENT),
        ('enrollment.delete', _DEPARTMENT),
        ('enrollment.approve', _DEPARTMENT),
        ('user.read', _DEPARTMENT),
        ('analytics.read', _DEPARTMENT),
        ('department.manage', _DEPARTMENT),
    ])
    + _edges(UserRole.INSTITUTION_ADMIN, 'inst-admin', [
        ('user.create', _INSTITUTION),
        ('user.manage', _INSTITUTION),
        ('user.delete', _INSTITUTION),
        ('role.assign', _INSTITUTION),
        ('role.revoke', _INSTITUTION),
        ('role.approve', _INSTITUTION),
        ('role.audit', _INSTITUTION),
        ('analytics.export', _INSTITUTION),
        ('department.create', _INSTITUTION),
        ('institution.manage', _INSTITUTION),
    ])
    + _edges(UserRole.SYSTEM_ADMIN, 'sys-admin', [
        ('system.configure', ()),
        ('system.audit', ()),
        ('institution.create', ()),
    ])
)


def default_registry() -> PermissionRegistry:
    """Registry built from the built-in catalog."""
    return PermissionRegistry(DEFAULT_PERMISSIONS, DEFAULT_ROLE_PERMISSIONS)
