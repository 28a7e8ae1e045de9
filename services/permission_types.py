"""
Access-Control Type Definitions

Immutable value types shared by the permission registry, scope resolver,
condition evaluator and permission checker. Registry data (permissions and
role-permission edges) and assignment data (user role assignments) are
separate: an assignment points at registry data only through the UserRole
enum, never by object reference.

Enumerations are ``str`` enums so that values round-trip through JSON
configuration, database columns and HTTP payloads unchanged.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from utils.datetime import now_utc, to_utc


class UserRole(str, Enum):
    """Roles a user can hold through a role assignment."""

    STUDENT = "student"
    TEACHER = "teacher"
    DEPARTMENT_ADMIN = "department_admin"
    INSTITUTION_ADMIN = "institution_admin"
    SYSTEM_ADMIN = "system_admin"

    def __str__(self) -> str:
        return self.value


class RoleStatus(str, Enum):
    """
    Role assignment lifecycle status.

    Status Transitions:
    - ACTIVE → REVOKED: manual revocation
    - ACTIVE → EXPIRED: expiry sweep once expires_at has passed
    - EXPIRED → ACTIVE: approved extension
    """

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"

    def __str__(self) -> str:
        return self.value


class PermissionCategory(str, Enum):
    """Permission categories used for catalog filtering."""

    CONTENT = "content"
    USER_MANAGEMENT = "user_management"
    ANALYTICS = "analytics"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value


class PermissionScope(str, Enum):
    """
    Maximum breadth at which a permission may apply, regardless of role.

    Scope Categories:
    - SELF: resources owned by the requester
    - DEPARTMENT: resources in the requester's department
    - INSTITUTION: resources in the requester's institution
    - SYSTEM: system-wide, system administrators only
    """

    SELF = "self"
    DEPARTMENT = "department"
    INSTITUTION = "institution"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value


class ConditionType(str, Enum):
    """Closed set of predicates a role-permission edge may carry."""

    DEPARTMENT_MATCH = "department_match"
    INSTITUTION_MATCH = "institution_match"
    RESOURCE_OWNER = "resource_owner"
    TIME_BASED = "time_based"

    def __str__(self) -> str:
        return self.value


class Action(str, Enum):
    """Resource actions understood by resource access checks."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"
    APPROVE = "approve"

    def __str__(self) -> str:
        return self.value


# Role ordering: higher rank holds every administrative scope of the lower ranks
ROLE_RANK: Dict[UserRole, int] = {
    UserRole.STUDENT: 0,
    UserRole.TEACHER: 1,
    UserRole.DEPARTMENT_ADMIN: 2,
    UserRole.INSTITUTION_ADMIN: 3,
    UserRole.SYSTEM_ADMIN: 4,
}


def role_at_least(role: UserRole, minimum: UserRole) -> bool:
    """Check whether ``role`` ranks at or above ``minimum``."""
    return ROLE_RANK[role] >= ROLE_RANK[minimum]


PERMISSION_NAME_PATTERN = re.compile(r'^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$')


@dataclass(frozen=True)
class Permission:
    """
    A named capability in ``resource.action`` form.

    Attributes:
        name: Unique, case-sensitive permission name (e.g. ``class.update``)
        category: Catalog category
        scope: Ceiling on how broadly the permission can apply
        description: Human-readable description
        id: Registry identifier referenced by role-permission edges; defaults to name
    """

    name: str
    category: PermissionCategory
    scope: PermissionScope
    description: str = ''
    id: str = ''

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, 'id', self.name)

    @property
    def resource(self) -> str:
        return self.name.split('.', 1)[0]

    @property
    def action(self) -> str:
        return self.name.split('.', 1)[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'category': self.category.value,
            'scope': self.scope.value,
        }


@dataclass(frozen=True)
class PermissionCondition:
    """A predicate tag plus read-only parameters."""

    type: ConditionType
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'parameters', MappingProxyType(dict(self.parameters)))


@dataclass(frozen=True)
class RolePermission:
    """
    Role → permission edge. All attached conditions must hold for the edge
    to grant; an edge without conditions grants unconditionally (subject to
    the permission's scope).
    """

    id: str
    role: UserRole
    permission_id: str
    conditions: Tuple[PermissionCondition, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, 'conditions', tuple(self.conditions))


@dataclass(frozen=True)
class UserRoleAssignment:
    """
    One user's holding of one role, optionally bound to a department or
    institution and optionally time-limited.

    An assignment is active only if its status is ACTIVE and it has no
    expiry or the expiry is still in the future.
    """

    id: str
    user_id: str
    role: UserRole
    status: RoleStatus = RoleStatus.ACTIVE
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    department_id: Optional[str] = None
    institution_id: Optional[str] = None
    is_temporary: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'role', UserRole(self.role))
        object.__setattr__(self, 'status', RoleStatus(self.status))
        object.__setattr__(self, 'assigned_at', to_utc(self.assigned_at))
        object.__setattr__(self, 'expires_at', to_utc(self.expires_at))
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or now_utc())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.status == RoleStatus.ACTIVE and not self.is_expired(now)


_CONTEXT_FIELDS = ('resource_id', 'resource_type', 'owner_id',
                   'department_id', 'institution_id', 'metadata')

# camelCase keys sent by older clients
_CONTEXT_ALIASES = {
    'resourceId': 'resource_id',
    'resourceType': 'resource_type',
    'ownerId': 'owner_id',
    'departmentId': 'department_id',
    'institutionId': 'institution_id',
}


def _optional_identifier(key: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"Context field '{key}' must be a string identifier")
    if isinstance(value, int):
        return str(value)
    if not isinstance(value, str):
        raise TypeError(f"Context field '{key}' must be a string identifier")
    return value or None


@dataclass(frozen=True)
class ResourceContext:
    """
    Per-request description of the target of an access check. Absent
    owner/department/institution fields mean "not applicable".
    """

    resource_id: str
    resource_type: str
    owner_id: Optional[str] = None
    department_id: Optional[str] = None
    institution_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], **defaults: Any) -> 'ResourceContext':
        """
        Build a context from a request payload.

        Keys may be snake_case or the camelCase aliases; ``defaults`` fill in
        fields the payload leaves out.

        Raises:
            TypeError: If the payload or a field has the wrong type
            ValueError: If required fields are missing or keys are unknown
        """
        if isinstance(data, ResourceContext):
            return data
        if not isinstance(data, Mapping):
            raise TypeError("Resource context must be an object")

        values: Dict[str, Any] = dict(defaults)
        for key, value in data.items():
            name = _CONTEXT_ALIASES.get(key, key)
            if name not in _CONTEXT_FIELDS:
                raise ValueError(f"Unknown resource context field '{key}'")
            values[name] = value

        for required in ('resource_id', 'resource_type'):
            value = values.get(required)
            if not isinstance(value, (str, int)) or isinstance(value, bool) or value == '':
                raise ValueError(f"Resource context requires '{required}'")

        metadata = values.get('metadata') or {}
        if not isinstance(metadata, Mapping):
            raise TypeError("Context field 'metadata' must be an object")

        return cls(
            resource_id=str(values['resource_id']),
            resource_type=str(values['resource_type']),
            owner_id=_optional_identifier('owner_id', values.get('owner_id')),
            department_id=_optional_identifier('department_id', values.get('department_id')),
            institution_id=_optional_identifier('institution_id', values.get('institution_id')),
            metadata=metadata,
        )

    def fingerprint(self) -> str:
        """Stable digest over every field, used to namespace cached decisions."""
        payload = json.dumps(
            [self.resource_id, self.resource_type, self.owner_id,
             self.department_id, self.institution_id, dict(self.metadata)],
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'owner_id': self.owner_id,
            'department_id': self.department_id,
            'institution_id': self.institution_id,
            'metadata': dict(self.metadata),
        }


ContextInput = Optional[Union[ResourceContext, Mapping[str, Any]]]


@dataclass(frozen=True)
class PermissionResult:
    """Outcome of a single check. ``reason`` is diagnostic only."""

    permission: str
    granted: bool
    reason: Optional[str] = None

    def to_dict(self, include_reason: bool = True) -> Dict[str, Any]:
        result: Dict[str, Any] = {'permission': self.permission, 'granted': self.granted}
        if include_reason:
            result['reason'] = self.reason
        return result


@dataclass(frozen=True)
class PermissionCheck:
    """One entry of a bulk check request."""

    permission: str
    context: ContextInput = None
