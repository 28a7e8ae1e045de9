"""
Permission Checker Service

Orchestrates access decisions for route handlers. Given a user id, a
permission name (or a resource type and action) and an optional resource
context, the checker loads the user's active role assignments from the store,
finds the registry edges each role holds for the permission, and grants access
when at least one edge has its scope satisfied and all of its conditions true.

Key Features:
- Boolean and structured single checks with short-circuit on first grant
- Resource/action checks where `manage` is a superset of every other action
- Capability listing for UI gating (ignores scope and conditions)
- Bulk checks sharing one role-assignment lookup with per-entry isolation
- Admin-scope checks for system, institution and department administration
- Per-instance TTL decision cache with explicit per-user invalidation

Failure semantics:
- Unknown permissions and users without roles are denials, never errors
- Store failures and oversized bulk requests raise AccessControlError
  subclasses; callers must treat them as "undeterminable" and fail closed
"""

import dataclasses
import threading
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional,
    Sequence, Tuple, Union,
)

import structlog

from services.base_service import AccessControlError, AssignmentStoreError, BulkLimitExceededError
from services.condition_evaluator import ConditionEvaluator
from services.permission_cache import CacheStats, Generation, PermissionCache
from services.permission_registry import PermissionRegistry, default_registry
from services.permission_types import (
    Action,
    ROLE_RANK,
    ContextInput,
    Permission,
    PermissionCheck,
    PermissionResult,
    PermissionScope,
    ResourceContext,
    UserRole,
    UserRoleAssignment,
    role_at_least,
)
from services.scope_resolver import ScopeResolver
from utils.logging import log_access_decision
from utils.monitoring import record_decision, record_store_failure, record_undeterminable

if TYPE_CHECKING:
    from services.role_assignment_store import RoleAssignmentStore

logger = structlog.get_logger(__name__)

# Cache fingerprint for checks without a resource context
GLOBAL_CONTEXT = 'global'

# Diagnostic reasons; logged, never shown to HTTP callers
REASON_GRANTED = 'granted'
REASON_UNKNOWN_PERMISSION = 'unknown_permission'
REASON_NO_ACTIVE_ROLES = 'no_active_roles'
REASON_NOT_GRANTED = 'role_does_not_grant_permission'
REASON_SCOPE_MISMATCH = 'scope_mismatch'
REASON_CONDITION_FAILED = 'condition_failed'

BULK_REASON_GRANTED = 'Permission granted'
BULK_REASON_DENIED = 'Permission denied'


@dataclass(frozen=True)
class PermissionCheckerConfig:
    """
    Checker settings.

    Attributes:
        cache_enabled: Whether decisions are cached
        cache_ttl: Decision lifetime in seconds
        bulk_check_limit: Maximum entries accepted by one bulk check
    """

    cache_enabled: bool = True
    cache_ttl: float = 300.0
    bulk_check_limit: int = 100

    def __post_init__(self) -> None:
        if self.cache_ttl < 0:
            raise ValueError("cache_ttl must not be negative")
        if self.bulk_check_limit < 0:
            raise ValueError("bulk_check_limit must not be negative")

    @classmethod
    def from_app_config(cls, config: Mapping[str, Any]) -> 'PermissionCheckerConfig':
        """Build from Flask config keys PERMISSION_CACHE_ENABLED, _CACHE_TTL, _BULK_CHECK_LIMIT."""
        return cls(
            cache_enabled=bool(config.get('PERMISSION_CACHE_ENABLED', True)),
            cache_ttl=float(config.get('PERMISSION_CACHE_TTL', 300)),
            bulk_check_limit=int(config.get('PERMISSION_BULK_CHECK_LIMIT', 100)),
        )


class PermissionChecker:
    """
    Access decision engine.

    Each instance owns its cache, so independently constructed checkers never
    share decisions.

    Args:
        store: Role assignment store (see services.role_assignment_store)
        registry: Permission registry; the built-in catalog by default
        config: Cache and bulk settings
        scope_resolver: Scope resolver override
        condition_evaluator: Condition evaluator override (e.g. with a fixed clock)
        cache: Cache override (e.g. with a fake monotonic clock)

    Usage Example:
        checker = PermissionChecker(SQLAlchemyRoleAssignmentStore())
        if not checker.has_permission(user_id, 'class.update', {'resource_id': 'c1',
                                                                'resource_type': 'class',
                                                                'owner_id': owner}):
            abort(403)
    """

    def __init__(self, store: 'RoleAssignmentStore',
                 registry: Optional[PermissionRegistry] = None,
                 config: Optional[PermissionCheckerConfig] = None,
                 scope_resolver: Optional[ScopeResolver] = None,
                 condition_evaluator: Optional[ConditionEvaluator] = None,
                 cache: Optional[PermissionCache] = None) -> None:
        self.config = config or PermissionCheckerConfig()
        self.store = store
        self.scope_resolver = scope_resolver or ScopeResolver()
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()
        self.cache = cache or PermissionCache(
            ttl_seconds=self.config.cache_ttl,
            enabled=self.config.cache_enabled,
        )
        self._registry = registry or default_registry()
        self._registry_lock = threading.Lock()

    @property
    def registry(self) -> PermissionRegistry:
        return self._registry

    # ============================================================================
    # SINGLE CHECKS
    # ============================================================================

    def has_permission(self, user_id: str, permission_name: str,
                       context: ContextInput = None) -> bool:
        """
        Decide whether ``user_id`` holds ``permission_name`` for ``context``.

        Args:
            user_id: Authenticated user identifier
            permission_name: Dotted permission name, e.g. ``class.update``
            context: Optional ResourceContext or mapping describing the target

        Returns:
            bool: True when granted; False for denials, unknown permissions
                  and users without roles

        Raises:
            AccessControlError: If role assignments cannot be loaded
            ValueError, TypeError: If ``context`` is malformed
        """
        return self.check_permission(user_id, permission_name, context).granted

    def check_permission(self, user_id: str, permission_name: str,
                         context: ContextInput = None) -> PermissionResult:
        """
        Structured form of has_permission.

        The returned reason is an internal diagnostic and must not be relayed
        to unauthorized callers.
        """
        resource_context = self._coerce_context(context)
        loader = _AssignmentLoader(self, user_id)
        return self._decide(user_id, permission_name, resource_context, loader)

    def can_access_resource(self, user_id: str, resource_id: str,
                            action: Union[Action, str],
                            context: ContextInput = None) -> bool:
        """
        Resource/action check.

        Tries ``{resource_type}.{action}`` and, for any action other than
        manage, ``{resource_type}.manage``. A context without a resource type
        checks against resource type ``unknown``.

        Raises:
            ValueError: If ``action`` is not a known Action
        """
        action = Action(action)
        resource_context = self._resource_context(resource_id, context)

        loader = _AssignmentLoader(self, user_id)
        for permission_name in map_action_to_permissions(action, resource_context.resource_type):
            if self._decide(user_id, permission_name, resource_context, loader).granted:
                return True
        return False

    # ============================================================================
    # LISTINGS AND BULK CHECKS
    # ============================================================================

    def get_user_permissions(self, user_id: str) -> List[Permission]:
        """
        Every permission reachable from the user's active roles, deduplicated
        by id and in catalog order.

        Scope and conditions are ignored: the result is for capability gating
        in user interfaces, never for enforcement.
        """
        assignments = self._load_assignments(user_id)
        registry = self._registry
        granted_ids = set()
        for role in {assignment.role for assignment in assignments}:
            granted_ids.update(edge.permission_id for edge in registry.get_role_permissions(role))
        return [p for p in registry.all_permissions() if p.id in granted_ids]

    def get_user_roles(self, user_id: str) -> List[UserRole]:
        """
        Distinct roles of the user's active assignments, highest rank first.

        Read straight from the store; never cached.
        """
        roles = {assignment.role for assignment in self._load_assignments(user_id)}
        return sorted(roles, key=ROLE_RANK.__getitem__, reverse=True)

    def check_bulk_permissions(self, user_id: str,
                               checks: Sequence[Union[PermissionCheck, Mapping[str, Any]]]
                               ) -> List[PermissionResult]:
        """
        Evaluate several checks with a single role-assignment lookup.

        A malformed entry yields a denied result carrying the validation
        message; the other entries are still evaluated.

        Args:
            user_id: Authenticated user identifier
            checks: PermissionCheck instances or ``{'permission', 'context'}`` mappings

        Returns:
            List[PermissionResult]: One result per entry, in request order

        Raises:
            BulkLimitExceededError: If more entries than the configured limit are given
            AccessControlError: If role assignments cannot be loaded
        """
        checks = list(checks)
        if len(checks) > self.config.bulk_check_limit:
            logger.warning(
                "bulk_check_limit_exceeded",
                user_id=user_id,
                requested=len(checks),
                limit=self.config.bulk_check_limit,
            )
            raise BulkLimitExceededError(self.config.bulk_check_limit, len(checks))

        loader = _AssignmentLoader(self, user_id)
        results: List[PermissionResult] = []
        for entry in checks:
            permission_name = _entry_permission_name(entry)
            try:
                name, resource_context = self._coerce_check(entry)
                result = self._decide(user_id, name, resource_context, loader)
            except (TypeError, ValueError) as e:
                logger.info(
                    "bulk_check_entry_rejected",
                    user_id=user_id,
                    permission=permission_name,
                    error=str(e),
                )
                results.append(PermissionResult(permission_name, False, str(e)))
                continue
            results.append(PermissionResult(
                result.permission,
                result.granted,
                BULK_REASON_GRANTED if result.granted else BULK_REASON_DENIED,
            ))
        return results

    # ============================================================================
    # ADMINISTRATION SCOPE
    # ============================================================================

    def is_admin(self, user_id: str, scope: Union[PermissionScope, str],
                 scope_id: Optional[str] = None) -> bool:
        """
        Decide whether the user administers ``scope``.

        - system: system_admin
        - institution: institution_admin or above, bound to ``scope_id`` when given
        - department: department_admin or above, bound to ``scope_id`` when given

        A system_admin satisfies every scope regardless of ``scope_id``.
        The self scope is never administrative.

        Raises:
            ValueError: If ``scope`` is not a known PermissionScope
        """
        scope = PermissionScope(scope)
        for assignment in self._load_assignments(user_id):
            if _is_admin_assignment(assignment, scope, scope_id):
                return True
        return False

    # ============================================================================
    # CACHE MANAGEMENT
    # ============================================================================

    def invalidate_user_cache(self, user_id: str) -> int:
        """
        Drop every cached decision for ``user_id``.

        Must be called after any committed role-assignment mutation for that
        user, before the mutating request returns.
        """
        removed = self.cache.invalidate_user(user_id)
        logger.debug("permission_cache_invalidated", user_id=user_id, entries=removed)
        return removed

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.debug("permission_cache_cleared")

    def reload_registry(self, registry: PermissionRegistry) -> None:
        """Swap the registry and drop every cached decision."""
        with self._registry_lock:
            self._registry = registry
            self.cache.clear()
        logger.info("permission_registry_reloaded", permissions=len(registry))

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    # ============================================================================
    # INTERNALS
    # ============================================================================

    def _load_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        """One store query per call; failures are undeterminable, never 'no roles'."""
        try:
            return list(self.store.get_active_assignments(user_id))
        except AccessControlError:
            record_undeterminable()
            raise
        except Exception as e:
            record_undeterminable()
            record_store_failure(getattr(self.store, 'store_name', type(self.store).__name__))
            logger.error(
                "role_assignment_store_failed",
                user_id=user_id,
                store=type(self.store).__name__,
                error=str(e),
            )
            raise AssignmentStoreError("Unable to load role assignments", cause=e) from e

    def _decide(self, user_id: str, permission_name: str,
                context: Optional[ResourceContext],
                loader: '_AssignmentLoader') -> PermissionResult:
        cache_key = (permission_name, context.fingerprint() if context else GLOBAL_CONTEXT)
        cached = self.cache.get(user_id, cache_key)
        if cached is not None:
            log_access_decision(user_id, permission_name, cached, reason='cached', cached=True)
            return PermissionResult(permission_name, cached, 'cached')

        # Read before the registry and assignments so a concurrent invalidation
        # makes the write below a no-op instead of caching a stale decision.
        generation = self.cache.generation(user_id)
        registry = self._registry
        permission = registry.get_permission(permission_name)
        if permission is None:
            granted, reason = False, REASON_UNKNOWN_PERMISSION
        else:
            granted, reason = self._evaluate(permission, loader.assignments(), context, registry)
            generation = min(generation, loader.generation)

        self.cache.set(user_id, cache_key, granted, generation=generation)
        record_decision(granted)
        log_access_decision(
            user_id,
            permission_name,
            granted,
            reason=reason,
            resource_type=context.resource_type if context else None,
            resource_id=context.resource_id if context else None,
        )
        return PermissionResult(permission_name, granted, reason)

    def _evaluate(self, permission: Permission, assignments: Iterable[UserRoleAssignment],
                  context: Optional[ResourceContext],
                  registry: PermissionRegistry) -> Tuple[bool, str]:
        """First satisfying (assignment, edge) pair grants; otherwise the last failure explains."""
        assignments = list(assignments)
        if not assignments:
            return False, REASON_NO_ACTIVE_ROLES

        reason = REASON_NOT_GRANTED
        for assignment in assignments:
            edges = registry.get_role_permission_edges(assignment.role, permission.id)
            if not edges:
                continue
            if not self.scope_resolver.resolve(permission.scope, assignment, context):
                reason = REASON_SCOPE_MISMATCH
                continue
            for edge in edges:
                failed = self.condition_evaluator.first_failure(edge.conditions, assignment, context)
                if failed is None:
                    return True, f"{REASON_GRANTED}:{assignment.role.value}"
                reason = f"{REASON_CONDITION_FAILED}:{failed}"
        return False, reason

    @staticmethod
    def _coerce_context(context: ContextInput) -> Optional[ResourceContext]:
        if context is None:
            return None
        return ResourceContext.from_mapping(context)

    def _coerce_check(self, entry: Union[PermissionCheck, Mapping[str, Any]]
                      ) -> Tuple[str, Optional[ResourceContext]]:
        if isinstance(entry, PermissionCheck):
            name, context = entry.permission, entry.context
        elif isinstance(entry, Mapping):
            unknown = set(entry) - {'permission', 'context'}
            if unknown:
                raise ValueError(f"Unknown bulk check field(s): {', '.join(sorted(unknown))}")
            name, context = entry.get('permission'), entry.get('context')
        else:
            raise TypeError("Bulk check entry must be an object")

        if not isinstance(name, str) or not name:
            raise ValueError("Bulk check entry requires a permission name")
        return name, self._coerce_context(context)

    @staticmethod
    def _resource_context(resource_id: str, context: ContextInput) -> ResourceContext:
        if isinstance(context, ResourceContext):
            return dataclasses.replace(context, resource_id=str(resource_id))
        payload: Dict[str, Any] = {}
        for key, value in (context or {}).items():
            if key in ('resource_id', 'resourceId'):
                continue
            if key in ('resource_type', 'resourceType') and not value:
                continue
            payload[key] = value
        return ResourceContext.from_mapping(payload, resource_id=resource_id, resource_type='unknown')


class _AssignmentLoader:
    """Loads a user's assignments at most once, on first cache miss."""

    def __init__(self, checker: PermissionChecker, user_id: str) -> None:
        self._checker = checker
        self._user_id = user_id
        self._assignments: Optional[List[UserRoleAssignment]] = None
        self.generation: Optional[Generation] = None

    def assignments(self) -> List[UserRoleAssignment]:
        if self._assignments is None:
            self.generation = self._checker.cache.generation(self._user_id)
            self._assignments = self._checker._load_assignments(self._user_id)
        return self._assignments


def map_action_to_permissions(action: Union[Action, str], resource_type: str) -> List[str]:
    """Candidate permission names for an action; manage covers every other action."""
    action = Action(action)
    names = [f"{resource_type}.{action.value}"]
    if action != Action.MANAGE:
        names.append(f"{resource_type}.{Action.MANAGE.value}")
    return names


def _is_admin_assignment(assignment: UserRoleAssignment, scope: PermissionScope,
                         scope_id: Optional[str]) -> bool:
    role = assignment.role
    if role == UserRole.SYSTEM_ADMIN:
        return scope != PermissionScope.SELF
    if scope == PermissionScope.INSTITUTION:
        return (role_at_least(role, UserRole.INSTITUTION_ADMIN)
                and (not scope_id or assignment.institution_id == scope_id))
    if scope == PermissionScope.DEPARTMENT:
        return (role_at_least(role, UserRole.DEPARTMENT_ADMIN)
                and (not scope_id or assignment.department_id == scope_id))
    return False


def _entry_permission_name(entry: Any) -> str:
    if isinstance(entry, PermissionCheck):
        return entry.permission if isinstance(entry.permission, str) else ''
    if isinstance(entry, Mapping):
        name = entry.get('permission')
        return name if isinstance(name, str) else ''
    return ''
