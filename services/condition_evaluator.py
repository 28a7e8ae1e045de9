"""
Condition Evaluator

Evaluates the conjunction of conditions attached to a role-permission edge
against a role assignment and an optional resource context. Dispatch is a
closed table keyed by ConditionType; every member must have a handler, which
is checked when the evaluator is constructed. A condition whose type has no
handler evaluates to False and is logged and counted as a defect.
"""

from datetime import datetime
from typing import Callable, Dict, Iterable, Optional

import structlog

from services.permission_types import (
    ConditionType,
    PermissionCondition,
    ResourceContext,
    UserRoleAssignment,
)
from utils.datetime import now_utc, parse_datetime
from utils.logging import SecurityEventType, log_security_event
from utils.monitoring import record_condition_defect

logger = structlog.get_logger(__name__)

ConditionHandler = Callable[[PermissionCondition, UserRoleAssignment, Optional[ResourceContext], datetime], bool]


class ConditionEvaluator:
    """
    Conjunctive condition evaluation.

    Args:
        clock: Returns the current aware UTC datetime; injectable for tests
    """

    def __init__(self, clock: Callable[[], datetime] = now_utc) -> None:
        self._clock = clock
        self._handlers: Dict[ConditionType, ConditionHandler] = {
            ConditionType.DEPARTMENT_MATCH: self._department_match,
            ConditionType.INSTITUTION_MATCH: self._institution_match,
            ConditionType.RESOURCE_OWNER: self._resource_owner,
            ConditionType.TIME_BASED: self._time_based,
        }
        missing = set(ConditionType) - set(self._handlers)
        if missing:
            raise RuntimeError(
                f"No evaluator for condition types: {sorted(str(m) for m in missing)}"
            )

    def evaluate(self, conditions: Iterable[PermissionCondition],
                 assignment: UserRoleAssignment,
                 context: Optional[ResourceContext] = None) -> bool:
        """True when every condition holds; an empty list always holds."""
        return self.first_failure(conditions, assignment, context) is None

    def first_failure(self, conditions: Iterable[PermissionCondition],
                      assignment: UserRoleAssignment,
                      context: Optional[ResourceContext] = None) -> Optional[str]:
        """
        Evaluate conditions in order and stop at the first that fails.

        Returns:
            The failing condition's type tag, or None when all conditions hold
        """
        now = self._clock()
        for condition in conditions:
            if not self.evaluate_condition(condition, assignment, context, now):
                return str(getattr(condition.type, 'value', condition.type))
        return None

    def evaluate_condition(self, condition: PermissionCondition,
                           assignment: UserRoleAssignment,
                           context: Optional[ResourceContext] = None,
                           now: Optional[datetime] = None) -> bool:
        handler = self._handlers.get(condition.type)
        if handler is None:
            condition_type = str(getattr(condition.type, 'value', condition.type))
            record_condition_defect(condition_type)
            log_security_event(
                SecurityEventType.REGISTRY_DEFECT,
                "Condition type has no evaluator; denying",
                severity='error',
                condition_type=condition_type,
                role=str(assignment.role),
                assignment_id=assignment.id,
            )
            return False
        return handler(condition, assignment, context, now or self._clock())

    # Handlers

    @staticmethod
    def _department_match(condition, assignment, context, now) -> bool:
        department_id = context.department_id if context is not None else None
        return department_id == assignment.department_id

    @staticmethod
    def _institution_match(condition, assignment, context, now) -> bool:
        institution_id = context.institution_id if context is not None else None
        return institution_id == assignment.institution_id

    @staticmethod
    def _resource_owner(condition, assignment, context, now) -> bool:
        owner_id = context.owner_id if context is not None else None
        return owner_id == assignment.user_id

    @staticmethod
    def _time_based(condition, assignment, context, now) -> bool:
        start_time = condition.parameters.get('start_time')
        end_time = condition.parameters.get('end_time')

        # Strings only reach here from hand-built edges; the registry parses them.
        if start_time is not None and now < parse_datetime(start_time):
            return False
        if end_time is not None and now > parse_datetime(end_time):
            return False

        # A lapsed assignment never satisfies a time window, whatever the store returned.
        if assignment.expires_at is not None and assignment.expires_at <= now:
            return False
        return True
