"""
Scope Resolver

Decides whether a permission's declared scope is satisfied by a role
assignment relative to the target resource. A missing context, or a missing
department/institution field within it, is "not applicable" and resolves
permissively: a check without resource context tests the general capability
only (e.g. "can this role ever create classes").
"""

from typing import Callable, Dict, Optional

from services.permission_types import (
    PermissionScope,
    ResourceContext,
    UserRole,
    UserRoleAssignment,
)
from utils.logging import SecurityEventType, log_security_event
from utils.monitoring import record_scope_defect


class ScopeResolver:
    """Stateless scope check dispatched over the PermissionScope enum."""

    def __init__(self) -> None:
        self._resolvers: Dict[PermissionScope, Callable[[UserRoleAssignment, Optional[ResourceContext]], bool]] = {
            PermissionScope.SELF: self._resolve_self,
            PermissionScope.DEPARTMENT: self._resolve_department,
            PermissionScope.INSTITUTION: self._resolve_institution,
            PermissionScope.SYSTEM: self._resolve_system,
        }

    def resolve(self, scope: PermissionScope, assignment: UserRoleAssignment,
                context: Optional[ResourceContext] = None) -> bool:
        """
        Check ``scope`` against ``assignment`` and the optional ``context``.

        Args:
            scope: The permission's scope ceiling
            assignment: Active role assignment of the requester
            context: Target resource, or None for a capability check

        Returns:
            bool: True when the scope covers the context
        """
        resolver = self._resolvers.get(scope)
        if resolver is None:
            scope_name = str(getattr(scope, 'value', scope))
            record_scope_defect(scope_name)
            log_security_event(
                SecurityEventType.REGISTRY_DEFECT,
                "Permission scope has no resolver; denying",
                severity='error',
                scope=scope_name,
                role=str(assignment.role),
                assignment_id=assignment.id,
            )
            return False
        return resolver(assignment, context)

    @staticmethod
    def _resolve_self(assignment: UserRoleAssignment,
                      context: Optional[ResourceContext]) -> bool:
        return context is None or context.owner_id == assignment.user_id

    @staticmethod
    def _resolve_department(assignment: UserRoleAssignment,
                            context: Optional[ResourceContext]) -> bool:
        if context is None or context.department_id is None:
            return True
        return context.department_id == assignment.department_id

    @staticmethod
    def _resolve_institution(assignment: UserRoleAssignment,
                             context: Optional[ResourceContext]) -> bool:
        if context is None or context.institution_id is None:
            return True
        return context.institution_id == assignment.institution_id

    @staticmethod
    def _resolve_system(assignment: UserRoleAssignment,
                        context: Optional[ResourceContext]) -> bool:
        return assignment.role == UserRole.SYSTEM_ADMIN
