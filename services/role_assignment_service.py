"""
Role Assignment Lifecycle Service

Owns every mutation of persisted role assignments and, with it, cache
invalidation: after each committed grant, revocation, extension or expiry
sweep the permission checker's cache for the affected users is dropped and
registered invalidation listeners are notified before the call returns.

Key Features:
- Role grants with department/institution binding and temporary expiry
- Revocation and expiry as status transitions; records are never deleted
- Expiry extension that reactivates expired assignments
- Batched expiry sweep for scheduled jobs
- Audit trail entries appended by the model on every transition
- Invalidation listeners as a fan-out hook for multi-process deployments
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from sqlalchemy.exc import SQLAlchemyError

from models import RoleAssignmentRecord
from services.base_service import (
    BaseService,
    DatabaseError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from services.permission_checker import PermissionChecker
from services.permission_types import RoleStatus, UserRole
from utils.datetime import now_utc, to_utc
from utils.logging import SecurityEventType, log_security_event

InvalidationListener = Callable[[str], None]

DEFAULT_MAX_TEMPORARY_DAYS = 30
DEFAULT_EXPIRY_BATCH_SIZE = 100


class RoleAssignmentService(BaseService):
    """
    Grant, revoke, extend and expire role assignments.

    Args:
        checker: Permission checker whose cache is invalidated after commits
        db_session: Optional session; defaults to the Flask-SQLAlchemy session
        clock: Returns the current aware UTC datetime
        max_temporary_days: Upper bound on a temporary grant's lifetime
        listeners: Callables invoked with each affected user id after commit
    """

    def __init__(self, checker: Optional[PermissionChecker] = None,
                 db_session: Optional[Any] = None,
                 clock: Callable[[], datetime] = now_utc,
                 max_temporary_days: int = DEFAULT_MAX_TEMPORARY_DAYS,
                 listeners: Iterable[InvalidationListener] = ()) -> None:
        super().__init__(db_session)
        self.checker = checker
        self._clock = clock
        self.max_temporary_days = max_temporary_days
        self._listeners: List[InvalidationListener] = list(listeners)

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    # ============================================================================
    # MUTATIONS
    # ============================================================================

    def grant_role(self, user_id: str, role: Union[UserRole, str], assigned_by: str,
                   department_id: Optional[str] = None,
                   institution_id: Optional[str] = None,
                   expires_at: Optional[datetime] = None,
                   is_temporary: bool = False,
                   metadata: Optional[Dict[str, Any]] = None) -> RoleAssignmentRecord:
        """
        Create an active role assignment.

        Args:
            user_id: User receiving the role
            role: Role to grant
            assigned_by: Acting user
            department_id: Department the assignment is bound to
            institution_id: Institution the assignment is bound to
            expires_at: Optional expiry; required for temporary grants
            is_temporary: Whether the grant is temporary
            metadata: Free-form assignment metadata

        Returns:
            RoleAssignmentRecord: The committed record

        Raises:
            ValidationError: If the role is unknown, the expiry is invalid or
                the user already holds the same active role binding
            DatabaseError: If the commit fails
        """
        if not user_id:
            raise ValidationError("user_id is required")
        try:
            role = UserRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'") from None

        now = self._clock()
        expires_at = to_utc(expires_at)
        if is_temporary and expires_at is None:
            raise ValidationError("Temporary role assignments require an expiration date")
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Expiration date must be in the future")
        if is_temporary and expires_at > now + timedelta(days=self.max_temporary_days):
            raise ValidationError(
                f"Temporary role cannot exceed {self.max_temporary_days} days"
            )

        if self._find_active_duplicate(user_id, role, department_id, institution_id, now):
            raise ValidationError("User already has this role")

        record = RoleAssignmentRecord(
            user_id=user_id,
            role=role,
            status=RoleStatus.ACTIVE,
            assigned_by=assigned_by,
            assigned_at=now,
            expires_at=expires_at,
            department_id=department_id,
            institution_id=institution_id,
            is_temporary=is_temporary,
            assignment_metadata=dict(metadata or {}),
        )
        with self.transaction() as session:
            session.add(record)

        self._log_change('granted', record, actor=assigned_by)
        self._invalidate({user_id})
        return record

    def revoke_role(self, assignment_id: str, revoked_by: str,
                    reason: Optional[str] = None) -> RoleAssignmentRecord:
        """
        Revoke an assignment.

        Raises:
            NotFoundError: If the assignment does not exist
            ValidationError: If it is already revoked
            DatabaseError: If the commit fails
        """
        with self.transaction():
            record = self.get_assignment(assignment_id)
            if not record.revoke(revoked_by=revoked_by, reason=reason, now=self._clock()):
                raise ValidationError("Assignment is already revoked")

        self._log_change('revoked', record, actor=revoked_by, reason=reason)
        self._invalidate({record.user_id})
        return record

    def extend_assignment(self, assignment_id: str, new_expires_at: datetime,
                          extended_by: str,
                          reason: Optional[str] = None) -> RoleAssignmentRecord:
        """
        Move an assignment's expiry later; an expired assignment becomes
        active again.

        Raises:
            NotFoundError: If the assignment does not exist
            ValidationError: If it is revoked or the new expiry is not later
                than both now and the current expiry
            DatabaseError: If the commit fails
        """
        with self.transaction():
            record = self.get_assignment(assignment_id)
            try:
                extended = record.extend_expiration(
                    new_expires_at,
                    extended_by=extended_by,
                    reason=reason,
                    now=self._clock(),
                )
            except ValueError as e:
                raise ValidationError(str(e)) from e
            if not extended:
                raise ValidationError("Revoked assignments cannot be extended")

        self._log_change('extended', record, actor=extended_by, reason=reason)
        self._invalidate({record.user_id})
        return record

    def expire_assignments(self, batch_size: int = DEFAULT_EXPIRY_BATCH_SIZE) -> int:
        """
        Mark every active assignment whose expiry has passed as expired.

        Processes in batches, committing each batch, and invalidates the
        affected users after each commit.

        Returns:
            int: Number of assignments expired
        """
        now = self._clock()
        expired_count = 0

        while True:
            with self.transaction() as session:
                batch = (
                    session.query(RoleAssignmentRecord)
                    .filter(
                        RoleAssignmentRecord.status == RoleStatus.ACTIVE,
                        RoleAssignmentRecord.expires_at.isnot(None),
                        RoleAssignmentRecord.expires_at <= now,
                    )
                    .limit(batch_size)
                    .all()
                )
                expired = [record for record in batch if record.expire(now=now)]
                user_ids = {record.user_id for record in expired}

            if not expired:
                break
            expired_count += len(expired)
            self._invalidate(user_ids)

        self.logger.info("role_assignments_expired", count=expired_count)
        return expired_count

    # ============================================================================
    # QUERIES
    # ============================================================================

    def get_assignment(self, assignment_id: str) -> RoleAssignmentRecord:
        """
        Raises:
            NotFoundError: If no assignment has ``assignment_id``
        """
        try:
            record = self.db_session.get(RoleAssignmentRecord, assignment_id)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load role assignment", cause=e) from e
        if record is None:
            raise NotFoundError(f"Role assignment '{assignment_id}' not found")
        return record

    def get_user_assignments(self, user_id: str,
                             include_inactive: bool = False) -> List[RoleAssignmentRecord]:
        """A user's assignments, newest first; only active ones unless ``include_inactive``."""
        try:
            query = self.db_session.query(RoleAssignmentRecord).filter(
                RoleAssignmentRecord.user_id == user_id
            )
            if not include_inactive:
                query = query.filter(RoleAssignmentRecord.status == RoleStatus.ACTIVE)
            records = query.order_by(RoleAssignmentRecord.assigned_at.desc()).all()
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load role assignments", cause=e) from e

        if include_inactive:
            return records
        now = self._clock()
        return [record for record in records if record.is_currently_active(now)]

    def get_expiring_assignments(self, within: timedelta = timedelta(days=7),
                                 institution_id: Optional[str] = None
                                 ) -> List[RoleAssignmentRecord]:
        """
        Active assignments whose expiry falls within ``within`` from now,
        soonest first.
        """
        now = self._clock()
        try:
            query = self.db_session.query(RoleAssignmentRecord).filter(
                RoleAssignmentRecord.status == RoleStatus.ACTIVE,
                RoleAssignmentRecord.expires_at.isnot(None),
                RoleAssignmentRecord.expires_at > now,
                RoleAssignmentRecord.expires_at <= now + within,
            )
            if institution_id:
                query = query.filter(RoleAssignmentRecord.institution_id == institution_id)
            return query.order_by(RoleAssignmentRecord.expires_at.asc()).all()
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load expiring role assignments", cause=e) from e

    # ============================================================================
    # INTERNALS
    # ============================================================================

    def _find_active_duplicate(self, user_id: str, role: UserRole,
                               department_id: Optional[str],
                               institution_id: Optional[str],
                               now: datetime) -> bool:
        try:
            candidates = self.db_session.query(RoleAssignmentRecord).filter(
                RoleAssignmentRecord.user_id == user_id,
                RoleAssignmentRecord.role == role,
                RoleAssignmentRecord.status == RoleStatus.ACTIVE,
            ).all()
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load role assignments", cause=e) from e
        return any(
            record.department_id == department_id
            and record.institution_id == institution_id
            and record.is_currently_active(now)
            for record in candidates
        )

    def _invalidate(self, user_ids: Set[str]) -> None:
        """
        Drop cached decisions for ``user_ids`` and notify listeners.

        Every listener runs even if an earlier one fails; the first failure
        is raised afterwards.
        """
        failures = []
        for user_id in sorted(user_ids):
            if self.checker is not None:
                self.checker.invalidate_user_cache(user_id)
            for listener in self._listeners:
                try:
                    listener(user_id)
                except Exception as e:
                    self.logger.error(
                        "invalidation_listener_failed",
                        user_id=user_id,
                        listener=getattr(listener, '__name__', repr(listener)),
                        error=str(e),
                    )
                    failures.append(e)
        if failures:
            raise ServiceError(
                "Role assignment committed but cache invalidation did not complete",
                error_code="INVALIDATION_FAILED",
                cause=failures[0],
            ) from failures[0]

    def _log_change(self, action: str, record: RoleAssignmentRecord, actor: Optional[str],
                    reason: Optional[str] = None) -> None:
        log_security_event(
            SecurityEventType.ROLE_ASSIGNMENT_CHANGE,
            f"Role assignment {action}",
            severity='info',
            action=action,
            assignment_id=record.id,
            target_user_id=record.user_id,
            role=record.role.value,
            actor=actor,
            reason=reason,
        )
