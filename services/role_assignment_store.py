"""
Role Assignment Store Adapters

The permission checker reads role assignments through a single query
contract: given a user id, return every assignment whose status is active and
whose expiry is unset or in the future. This module defines that contract and
two adapters for it.

Key Features:
- RoleAssignmentStore protocol consumed by PermissionChecker
- SQLAlchemyRoleAssignmentStore backed by the user_role_assignments table,
  one query per user
- InMemoryRoleAssignmentStore for embedding and tests
- Store failures raised as AssignmentStoreError, never reported as "no roles"
"""

import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

import structlog
from flask import has_app_context
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from models import RoleAssignmentRecord, db
from services.base_service import AssignmentStoreError
from services.permission_types import RoleStatus, UserRoleAssignment
from utils.datetime import now_utc
from utils.monitoring import record_store_failure

logger = structlog.get_logger(__name__)


@runtime_checkable
class RoleAssignmentStore(Protocol):
    """Query contract for a user's currently active role assignments."""

    def get_active_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        """
        Return assignments with status active and no expiry or an expiry
        later than now.

        Raises:
            AssignmentStoreError: If the backing store cannot be read
        """
        ...


class SQLAlchemyRoleAssignmentStore:
    """
    Store backed by RoleAssignmentRecord rows.

    Args:
        db_session: Optional session; defaults to the Flask-SQLAlchemy scoped
                    session of the current application context
        clock: Returns the current aware UTC datetime
    """

    store_name = 'sqlalchemy'

    def __init__(self, db_session: Optional[Any] = None,
                 clock: Callable[[], datetime] = now_utc) -> None:
        self._db_session = db_session
        self._clock = clock

    @property
    def session(self):
        if self._db_session is not None:
            return self._db_session
        if not has_app_context():
            raise AssignmentStoreError(
                "Role assignment store requires a session or an application context"
            )
        return db.session

    def get_active_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        if not user_id:
            return []

        now = self._clock()
        try:
            records = (
                self.session.query(RoleAssignmentRecord)
                .filter(
                    RoleAssignmentRecord.user_id == user_id,
                    RoleAssignmentRecord.status == RoleStatus.ACTIVE,
                    or_(
                        RoleAssignmentRecord.expires_at.is_(None),
                        RoleAssignmentRecord.expires_at > now,
                    ),
                )
                .order_by(RoleAssignmentRecord.assigned_at.asc())
                .all()
            )
        except SQLAlchemyError as e:
            record_store_failure(self.store_name)
            logger.error("role_assignment_query_failed", user_id=user_id, error=str(e))
            raise AssignmentStoreError(
                "Unable to load role assignments",
                cause=e
            ) from e

        return [record.to_assignment() for record in records]


class InMemoryRoleAssignmentStore:
    """
    Thread-safe in-process store applying the same active predicate as the
    database adapter.

    Usage Example:
        store = InMemoryRoleAssignmentStore()
        store.add(UserRoleAssignment(id='a1', user_id='u1', role=UserRole.TEACHER))
        checker = PermissionChecker(store)
    """

    store_name = 'memory'

    def __init__(self, assignments: Iterable[UserRoleAssignment] = (),
                 clock: Callable[[], datetime] = now_utc) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._assignments: Dict[str, UserRoleAssignment] = {}
        for assignment in assignments:
            self.add(assignment)

    def add(self, assignment: UserRoleAssignment) -> None:
        """Insert or replace an assignment by id."""
        with self._lock:
            self._assignments[assignment.id] = assignment

    def remove(self, assignment_id: str) -> Optional[UserRoleAssignment]:
        with self._lock:
            return self._assignments.pop(assignment_id, None)

    def clear(self) -> None:
        with self._lock:
            self._assignments.clear()

    def all_assignments(self, user_id: Optional[str] = None) -> List[UserRoleAssignment]:
        """Every stored assignment regardless of status."""
        with self._lock:
            assignments = list(self._assignments.values())
        if user_id is not None:
            assignments = [a for a in assignments if a.user_id == user_id]
        return assignments

    def get_active_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        if not user_id:
            return []
        now = self._clock()
        return [a for a in self.all_assignments(user_id) if a.is_active(now)]
