"""
Unit tests for PermissionChecker.

Covers single, resource/action, bulk and admin-scope checks over the
in-memory store, cache behavior (coherence after invalidation, idempotence,
per-instance isolation) and the failure taxonomy (denials vs undeterminable
decisions).
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from services.base_service import AccessControlError, AssignmentStoreError, BulkLimitExceededError
from services.condition_evaluator import ConditionEvaluator
from services.permission_checker import (
    BULK_REASON_DENIED,
    BULK_REASON_GRANTED,
    REASON_NO_ACTIVE_ROLES,
    REASON_SCOPE_MISMATCH,
    REASON_UNKNOWN_PERMISSION,
    PermissionChecker,
    PermissionCheckerConfig,
    map_action_to_permissions,
)
from services.permission_registry import PermissionRegistry
from services.permission_types import (
    Action,
    ConditionType,
    Permission,
    PermissionCategory,
    PermissionCheck,
    PermissionCondition,
    PermissionScope,
    RolePermission,
    RoleStatus,
    UserRole,
)
from tests.factories import UserRoleAssignmentFactory

U1 = 'user-1'
U2 = 'user-2'


def _grant(store, role, user_id=U1, **fields):
    assignment = UserRoleAssignmentFactory(user_id=user_id, role=role, **fields)
    store.add(assignment)
    return assignment


def _class_context(**fields):
    context = {'resource_id': 'class-1', 'resource_type': 'class'}
    context.update(fields)
    return context


class _MutatedDuringLookupStore:
    """Returns a snapshot, then runs ``on_lookup`` once before handing it back."""

    def __init__(self, store):
        self.store = store
        self.on_lookup = None

    def get_active_assignments(self, user_id):
        snapshot = self.store.get_active_assignments(user_id)
        if self.on_lookup is not None:
            hook, self.on_lookup = self.on_lookup, None
            hook()
        return snapshot


class TestSingleChecks:

    def test_unknown_permission_is_denied(self, checker, memory_store):
        """Unknown permission names deny for every user, including admins."""
        _grant(memory_store, UserRole.SYSTEM_ADMIN)

        result = checker.check_permission(U1, 'nonexistent.permission')

        assert result.granted is False
        assert result.reason == REASON_UNKNOWN_PERMISSION
        assert checker.has_permission(U2, 'nonexistent.permission') is False

    def test_unknown_permission_skips_store_lookup(self, memory_store):
        store = Mock(wraps=memory_store)
        checker = PermissionChecker(store)

        assert checker.has_permission(U1, 'nonexistent.permission') is False
        store.get_active_assignments.assert_not_called()

    def test_user_without_roles_is_denied(self, checker):
        result = checker.check_permission('nobody', 'class.read')

        assert result.granted is False
        assert result.reason == REASON_NO_ACTIVE_ROLES

    def test_owner_condition(self, checker, memory_store):
        """A teacher may update their own class but not someone else's."""
        _grant(memory_store, UserRole.TEACHER)

        assert checker.has_permission(U1, 'class.update', _class_context(owner_id=U1))
        assert not checker.has_permission(U1, 'class.update', _class_context(owner_id=U2))

    def test_self_scope_contains_grant(self, checker, memory_store):
        """A self-scoped permission never applies to another user's resource."""
        _grant(memory_store, UserRole.STUDENT)
        context = {'resource_id': U2, 'resource_type': 'user', 'owner_id': U2}

        result = checker.check_permission(U1, 'user.update', context)

        assert result.granted is False
        assert result.reason == REASON_SCOPE_MISMATCH

    def test_department_condition(self, checker, memory_store):
        _grant(memory_store, UserRole.DEPARTMENT_ADMIN, department_id='D1')
        context = {'resource_id': 'enr-1', 'resource_type': 'enrollment'}

        assert checker.has_permission(U1, 'enrollment.approve', dict(context, department_id='D1'))
        assert not checker.has_permission(U1, 'enrollment.approve', dict(context, department_id='D2'))

    def test_capability_check_without_context(self, checker, memory_store):
        """Without a resource context only the general capability is tested."""
        _grant(memory_store, UserRole.STUDENT)

        assert checker.has_permission(U1, 'class.read')
        assert not checker.has_permission(U1, 'class.create')

    def test_camel_case_context_keys(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER)
        context = {'resourceId': 'class-1', 'resourceType': 'class', 'ownerId': U1}

        assert checker.has_permission(U1, 'class.update', context)

    def test_malformed_context_raises(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER)

        with pytest.raises(ValueError):
            checker.has_permission(U1, 'class.update', {'resource_id': 'class-1'})
        with pytest.raises(TypeError):
            checker.has_permission(U1, 'class.update', ['class-1'])

    def test_inactive_assignments_grant_nothing(self, checker, memory_store, fixed_now):
        _grant(memory_store, UserRole.SYSTEM_ADMIN, status=RoleStatus.REVOKED)
        _grant(memory_store, UserRole.SYSTEM_ADMIN, expires_at=fixed_now - timedelta(minutes=1))

        assert not checker.has_permission(U1, 'system.configure')

    def test_granted_reason_names_role(self, checker, memory_store):
        _grant(memory_store, UserRole.SYSTEM_ADMIN)

        result = checker.check_permission(U1, 'system.configure')

        assert result.granted is True
        assert result.reason == 'granted:system_admin'


class TestConjunctiveConditions:
    """An edge with two conditions grants only when both hold."""

    @pytest.fixture
    def checker(self, memory_store, clock):
        registry = PermissionRegistry(
            [Permission('grade.update', PermissionCategory.CONTENT, PermissionScope.DEPARTMENT)],
            [RolePermission('teacher-grade-update', UserRole.TEACHER, 'grade.update', (
                PermissionCondition(ConditionType.DEPARTMENT_MATCH),
                PermissionCondition(ConditionType.RESOURCE_OWNER),
            ))],
        )
        return PermissionChecker(memory_store, registry=registry,
                                 condition_evaluator=ConditionEvaluator(clock=clock))

    @pytest.mark.parametrize('department_id,owner_id,expected', [
        ('D1', U1, True),
        ('D2', U1, False),
        ('D1', U2, False),
    ])
    def test_grant_requires_all_conditions(self, checker, memory_store,
                                           department_id, owner_id, expected):
        _grant(memory_store, UserRole.TEACHER, department_id='D1')
        context = {'resource_id': 'grade-1', 'resource_type': 'grade',
                   'department_id': department_id, 'owner_id': owner_id}

        assert checker.has_permission(U1, 'grade.update', context) is expected


class TestResourceAccess:

    def test_manage_is_superset_of_other_actions(self, memory_store):
        """class.manage alone satisfies an update check on a class."""
        registry = PermissionRegistry(
            [
                Permission('class.update', PermissionCategory.CONTENT, PermissionScope.SELF),
                Permission('class.manage', PermissionCategory.CONTENT, PermissionScope.DEPARTMENT),
            ],
            [RolePermission('teacher-class-manage', UserRole.TEACHER, 'class.manage')],
        )
        checker = PermissionChecker(memory_store, registry=registry)
        _grant(memory_store, UserRole.TEACHER)

        assert checker.can_access_resource(
            U1, 'class-1', Action.UPDATE, {'resource_type': 'class', 'owner_id': U1}
        )
        assert not checker.has_permission(U1, 'class.update')

    def test_department_admin_manages_department_classes(self, checker, memory_store):
        _grant(memory_store, UserRole.DEPARTMENT_ADMIN, department_id='D1')

        assert checker.can_access_resource(
            U1, 'class-1', 'update', {'resource_type': 'class', 'department_id': 'D1'}
        )
        assert not checker.can_access_resource(
            U1, 'class-1', 'update', {'resource_type': 'class', 'department_id': 'D2'}
        )

    def test_resource_id_argument_wins(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER)
        context = {'resource_id': 'ignored', 'resource_type': 'class', 'owner_id': U1}

        assert checker.can_access_resource(U1, 'class-1', Action.DELETE, context)

    def test_missing_resource_type_checks_unknown_type(self, checker, memory_store):
        _grant(memory_store, UserRole.SYSTEM_ADMIN)

        assert not checker.can_access_resource(U1, 'thing-1', Action.READ)

    def test_unknown_action_raises(self, checker):
        with pytest.raises(ValueError):
            checker.can_access_resource(U1, 'class-1', 'teleport', {'resource_type': 'class'})

    def test_action_mapping(self):
        assert map_action_to_permissions(Action.UPDATE, 'class') == ['class.update', 'class.manage']
        assert map_action_to_permissions('manage', 'class') == ['class.manage']


class TestUserPermissions:

    def test_union_of_roles_in_catalog_order(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER)
        _grant(memory_store, UserRole.STUDENT)
        _grant(memory_store, UserRole.SYSTEM_ADMIN, status=RoleStatus.REVOKED)

        names = [p.name for p in checker.get_user_permissions(U1)]

        assert names == [
            'content.create', 'content.read', 'content.update', 'content.delete',
            'class.create', 'class.read', 'class.update', 'class.delete',
            'enrollment.create', 'enrollment.read', 'enrollment.update', 'enrollment.approve',
            'user.read', 'user.update', 'analytics.read',
        ]

    def test_user_without_roles_has_no_permissions(self, checker):
        assert checker.get_user_permissions('nobody') == []

    def test_roles_highest_rank_first(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER, department_id='dept-1')
        _grant(memory_store, UserRole.TEACHER, department_id='dept-2')
        _grant(memory_store, UserRole.INSTITUTION_ADMIN)
        _grant(memory_store, UserRole.SYSTEM_ADMIN, status=RoleStatus.REVOKED)

        assert checker.get_user_roles(U1) == [UserRole.INSTITUTION_ADMIN, UserRole.TEACHER]
        assert checker.get_user_roles('nobody') == []


class TestBulkChecks:

    def test_malformed_entry_does_not_affect_others(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER)
        checks = [
            {'permission': 'class.read'},
            {'permission': 'class.update', 'context': 'not-a-mapping'},
            {'permission': ''},
            {'permission': 'class.read', 'context': {'resource_id': 'class-1'}},
            {'permission': 'class.update', 'context': _class_context(owner_id=U1)},
            {'permission': 'system.configure'},
            {'permission': 'class.read', 'scope': 'system'},
            'class.read',
        ]

        results = checker.check_bulk_permissions(U1, checks)

        assert [r.granted for r in results] == [True, False, False, False, True, False, False, False]
        assert results[0].reason == BULK_REASON_GRANTED
        assert results[1].permission == 'class.update'
        assert results[1].reason == 'Resource context must be an object'
        assert results[2].reason == 'Bulk check entry requires a permission name'
        assert results[5].reason == BULK_REASON_DENIED
        assert 'scope' in results[6].reason
        assert results[7].permission == ''

    def test_single_assignment_lookup(self, memory_store):
        store = Mock(wraps=memory_store)
        checker = PermissionChecker(store)
        _grant(memory_store, UserRole.STUDENT)

        results = checker.check_bulk_permissions(U1, [
            PermissionCheck('class.read'),
            PermissionCheck('content.read'),
            PermissionCheck('class.create'),
        ])

        assert [r.granted for r in results] == [True, True, False]
        store.get_active_assignments.assert_called_once_with(U1)

    def test_limit_exceeded(self, checker, memory_store):
        _grant(memory_store, UserRole.STUDENT)
        checks = [{'permission': 'class.read'}] * 101

        with pytest.raises(BulkLimitExceededError) as exc_info:
            checker.check_bulk_permissions(U1, checks)

        assert exc_info.value.limit == 100
        assert exc_info.value.requested == 101
        assert isinstance(exc_info.value, AccessControlError)

    def test_limit_is_inclusive(self, checker, memory_store):
        _grant(memory_store, UserRole.STUDENT)

        results = checker.check_bulk_permissions(U1, [{'permission': 'class.read'}] * 100)

        assert len(results) == 100
        assert all(r.granted for r in results)

    def test_empty_request(self, checker):
        assert checker.check_bulk_permissions(U1, []) == []


class TestAdminScope:

    def test_system_admin_is_universal(self, checker, memory_store):
        _grant(memory_store, UserRole.SYSTEM_ADMIN)

        assert checker.is_admin(U1, PermissionScope.SYSTEM)
        assert checker.is_admin(U1, 'institution', 'inst-anywhere')
        assert checker.is_admin(U1, 'department', 'dept-anywhere')
        assert not checker.is_admin(U1, PermissionScope.SELF)

    def test_institution_admin(self, checker, memory_store):
        _grant(memory_store, UserRole.INSTITUTION_ADMIN, institution_id='inst-1')

        assert checker.is_admin(U1, 'institution', 'inst-1')
        assert checker.is_admin(U1, 'institution')
        assert not checker.is_admin(U1, 'institution', 'inst-2')
        assert not checker.is_admin(U1, 'system')

    def test_institution_admin_ranks_above_department_admin(self, checker, memory_store):
        _grant(memory_store, UserRole.INSTITUTION_ADMIN, institution_id='inst-1', department_id='D1')

        assert checker.is_admin(U1, 'department')
        assert checker.is_admin(U1, 'department', 'D1')
        assert not checker.is_admin(U1, 'department', 'D2')

    def test_department_admin(self, checker, memory_store):
        _grant(memory_store, UserRole.DEPARTMENT_ADMIN, department_id='D1', institution_id='inst-1')

        assert checker.is_admin(U1, 'department', 'D1')
        assert not checker.is_admin(U1, 'department', 'D2')
        assert not checker.is_admin(U1, 'institution', 'inst-1')

    def test_teacher_administers_nothing(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER, department_id='D1')

        for scope in ('system', 'institution', 'department'):
            assert not checker.is_admin(U1, scope)

    def test_unknown_scope_raises(self, checker):
        with pytest.raises(ValueError):
            checker.is_admin(U1, 'galaxy')


class TestDecisionCache:

    def test_repeated_checks_are_idempotent(self, memory_store):
        store = Mock(wraps=memory_store)
        checker = PermissionChecker(store)
        _grant(memory_store, UserRole.TEACHER)

        first = checker.check_permission(U1, 'class.read')
        second = checker.check_permission(U1, 'class.read')

        assert first.granted is second.granted is True
        assert second.reason == 'cached'
        store.get_active_assignments.assert_called_once_with(U1)

    def test_cached_denial_until_invalidated(self, checker, memory_store):
        """A new grant becomes visible after the user's cache is invalidated."""
        assert not checker.has_permission(U1, 'class.read')

        _grant(memory_store, UserRole.STUDENT)
        assert not checker.has_permission(U1, 'class.read')

        assert checker.invalidate_user_cache(U1) == 1
        assert checker.has_permission(U1, 'class.read')

    def test_no_stale_grant_after_revocation(self, checker, memory_store):
        assignment = _grant(memory_store, UserRole.STUDENT)
        assert checker.has_permission(U1, 'class.read')

        memory_store.remove(assignment.id)
        checker.invalidate_user_cache(U1)

        assert not checker.has_permission(U1, 'class.read')

    def test_invalidation_is_per_user(self, checker, memory_store):
        _grant(memory_store, UserRole.STUDENT, user_id=U1)
        _grant(memory_store, UserRole.STUDENT, user_id=U2)
        checker.has_permission(U1, 'class.read')
        checker.has_permission(U2, 'class.read')

        checker.invalidate_user_cache(U1)

        assert checker.cache_stats().entries == 1

    def test_entries_expire_after_ttl(self, checker, memory_store, monotonic_clock):
        assert not checker.has_permission(U1, 'class.read')
        _grant(memory_store, UserRole.STUDENT)

        monotonic_clock.advance(301)

        assert checker.has_permission(U1, 'class.read')

    def test_context_is_part_of_cache_key(self, checker, memory_store):
        _grant(memory_store, UserRole.TEACHER)

        assert checker.has_permission(U1, 'class.update', _class_context(owner_id=U1))
        assert not checker.has_permission(U1, 'class.update', _class_context(owner_id=U2))
        assert checker.cache_stats().entries == 2

    def test_disabled_cache_reads_store_every_time(self, memory_store):
        store = Mock(wraps=memory_store)
        checker = PermissionChecker(store, config=PermissionCheckerConfig(cache_enabled=False))
        _grant(memory_store, UserRole.TEACHER)

        checker.has_permission(U1, 'class.read')
        checker.has_permission(U1, 'class.read')

        assert store.get_active_assignments.call_count == 2

    def test_checkers_do_not_share_caches(self, memory_store):
        first = PermissionChecker(memory_store)
        second = PermissionChecker(memory_store)

        assert not first.has_permission(U1, 'class.read')
        _grant(memory_store, UserRole.STUDENT)

        assert second.has_permission(U1, 'class.read')
        assert not first.has_permission(U1, 'class.read')

    def test_reload_registry_clears_cache(self, checker, memory_store):
        _grant(memory_store, UserRole.STUDENT)
        assert checker.has_permission(U1, 'class.read')

        checker.reload_registry(PermissionRegistry(
            [Permission('class.read', PermissionCategory.CONTENT, PermissionScope.INSTITUTION)],
            [],
        ))

        assert not checker.has_permission(U1, 'class.read')
        assert len(checker.registry) == 1

    def test_clear_cache(self, checker, memory_store):
        _grant(memory_store, UserRole.STUDENT)
        checker.has_permission(U1, 'class.read')

        checker.clear_cache()

        assert checker.cache_stats().entries == 0

    def test_invalidation_during_lookup_wins(self, memory_store):
        """A revocation committed while assignments are being read is not masked by the cache."""
        assignment = _grant(memory_store, UserRole.SYSTEM_ADMIN)
        store = _MutatedDuringLookupStore(memory_store)
        checker = PermissionChecker(store)

        def revoke():
            memory_store.remove(assignment.id)
            checker.invalidate_user_cache(U1)

        store.on_lookup = revoke

        first = checker.has_permission(U1, 'system.configure')
        second = checker.has_permission(U1, 'system.configure')

        assert first is True
        assert second is False

    def test_invalidation_during_bulk_lookup_wins(self, memory_store):
        assignment = _grant(memory_store, UserRole.SYSTEM_ADMIN)
        store = _MutatedDuringLookupStore(memory_store)
        checker = PermissionChecker(store)

        def revoke():
            memory_store.remove(assignment.id)
            checker.invalidate_user_cache(U1)

        store.on_lookup = revoke
        checker.check_bulk_permissions(U1, [{'permission': 'system.configure'},
                                            {'permission': 'system.audit'}])

        assert checker.cache_stats().entries == 0
        assert not checker.has_permission(U1, 'system.audit')


class TestUndeterminableDecisions:

    def test_store_failure_is_not_a_denial(self):
        store = Mock(spec=['get_active_assignments'])
        store.get_active_assignments.side_effect = RuntimeError('connection reset')
        checker = PermissionChecker(store)

        with pytest.raises(AssignmentStoreError) as exc_info:
            checker.has_permission(U1, 'class.read')

        assert isinstance(exc_info.value.cause, RuntimeError)

    def test_store_errors_propagate_unchanged(self):
        error = AssignmentStoreError('timeout')
        store = Mock(spec=['get_active_assignments'])
        store.get_active_assignments.side_effect = error
        checker = PermissionChecker(store)

        with pytest.raises(AssignmentStoreError) as exc_info:
            checker.is_admin(U1, 'system')

        assert exc_info.value is error

    def test_failed_lookup_is_not_cached(self, memory_store):
        store = Mock(spec=['get_active_assignments'])
        store.get_active_assignments.side_effect = [RuntimeError('down'), []]
        checker = PermissionChecker(store)

        with pytest.raises(AccessControlError):
            checker.has_permission(U1, 'class.read')

        assert checker.has_permission(U1, 'class.read') is False
        assert store.get_active_assignments.call_count == 2

    def test_bulk_store_failure_raises(self):
        store = Mock(spec=['get_active_assignments'])
        store.get_active_assignments.side_effect = RuntimeError('down')
        checker = PermissionChecker(store)

        with pytest.raises(AssignmentStoreError):
            checker.check_bulk_permissions(U1, [{'permission': 'class.read'}])


class TestTimeWindowBackstop:
    """A store that wrongly returns a lapsed assignment."""

    @pytest.fixture
    def checker(self, clock, fixed_now):
        registry = PermissionRegistry(
            [
                Permission('report.read', PermissionCategory.ANALYTICS, PermissionScope.INSTITUTION),
                Permission('report.export', PermissionCategory.ANALYTICS, PermissionScope.INSTITUTION),
            ],
            [
                RolePermission('teacher-report-read', UserRole.TEACHER, 'report.read',
                               (PermissionCondition(ConditionType.TIME_BASED),)),
                RolePermission('teacher-report-export', UserRole.TEACHER, 'report.export'),
            ],
        )
        lapsed = UserRoleAssignmentFactory(user_id=U1, role=UserRole.TEACHER,
                                           expires_at=fixed_now - timedelta(hours=1))
        store = Mock(spec=['get_active_assignments'])
        store.get_active_assignments.return_value = [lapsed]
        return PermissionChecker(store, registry=registry,
                                 condition_evaluator=ConditionEvaluator(clock=clock))

    def test_time_based_edge_denies_lapsed_assignment(self, checker):
        assert not checker.has_permission(U1, 'report.read')

    def test_unconditional_edge_trusts_store(self, checker):
        assert checker.has_permission(U1, 'report.export')


class TestCheckerConfig:

    def test_from_app_config(self):
        config = PermissionCheckerConfig.from_app_config({
            'PERMISSION_CACHE_ENABLED': False,
            'PERMISSION_CACHE_TTL': '30',
            'PERMISSION_BULK_CHECK_LIMIT': 10,
        })

        assert config == PermissionCheckerConfig(cache_enabled=False, cache_ttl=30.0,
                                                 bulk_check_limit=10)

    def test_defaults(self):
        config = PermissionCheckerConfig.from_app_config({})

        assert config.cache_enabled is True
        assert config.cache_ttl == 300
        assert config.bulk_check_limit == 100

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            PermissionCheckerConfig(cache_ttl=-1)
        with pytest.raises(ValueError):
            PermissionCheckerConfig(bulk_check_limit=-5)
