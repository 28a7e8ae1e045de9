"""
Role Assignment Persistence Model

This module implements the persisted form of a user's role assignment: one
row per (user, role, optional department/institution binding), with temporal
expiry, lifecycle status and an append-only audit trail. Rows are never
hard-deleted; revocation and expiry are status transitions.

Key Features:
- Enum-backed role and status columns stored as their string values
- Temporal assignment management with expiration and extension
- JSON audit trail appended on every lifecycle transition
- Conversion into the immutable UserRoleAssignment value used by the
  permission checker
- Composite indexes for the per-user active-assignment lookup
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import has_request_context, request
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, Enum as SAEnum,
    Index, String, Text, event,
)
from sqlalchemy.orm import validates

from services.permission_types import RoleStatus, UserRole, UserRoleAssignment
from utils.datetime import format_for_audit, now_utc, to_utc

from .base import AuditMixin, BaseModel, get_current_user_id

# Audit trail entries kept per record
AUDIT_TRAIL_LIMIT = 100


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


class RoleAssignmentRecord(BaseModel, AuditMixin):
    """
    Persisted role assignment.

    Status transitions:
        active -> revoked   (revoke)
        active -> expired   (expire, once expires_at has passed)
        expired -> active   (extend_expiration with a later expiry)

    Revoked is terminal.
    """

    __tablename__ = 'user_role_assignments'

    __table_args__ = (
        Index('idx_role_assignment_user_status', 'user_id', 'status'),
        Index('idx_role_assignment_expiry', 'status', 'expires_at'),
        Index('idx_role_assignment_department', 'department_id', 'status'),
        CheckConstraint(
            "status IN ('active', 'expired', 'revoked')",
            name='check_valid_assignment_status'
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    user_id = Column(String(255), nullable=False, index=True)

    role = Column(
        SAEnum(UserRole, name='user_role', native_enum=False,
               values_callable=_enum_values, validate_strings=True, length=32),
        nullable=False,
    )

    status = Column(
        SAEnum(RoleStatus, name='role_status', native_enum=False,
               values_callable=_enum_values, validate_strings=True, length=16),
        nullable=False,
        default=RoleStatus.ACTIVE,
    )

    assigned_by = Column(String(255), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    department_id = Column(String(255), nullable=True)
    institution_id = Column(String(255), nullable=True)

    is_temporary = Column(Boolean, nullable=False, default=False)

    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(String(255), nullable=True)
    revocation_reason = Column(Text, nullable=True)

    # 'metadata' is reserved on declarative classes
    assignment_metadata = Column('metadata', JSON, nullable=False, default=dict)

    audit_trail = Column(JSON, nullable=False, default=list)

    # Validation

    @validates('user_id')
    def validate_user_id(self, key: str, user_id: str) -> str:
        if not user_id or not str(user_id).strip():
            raise ValueError("user_id must be a non-empty identifier")
        return str(user_id)

    @validates('expires_at', 'assigned_at', 'revoked_at')
    def validate_datetimes(self, key: str, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value)

    # Status helpers

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = to_utc(self.expires_at)
        if expires_at is None:
            return False
        return expires_at <= (now or now_utc())

    def is_currently_active(self, now: Optional[datetime] = None) -> bool:
        """Active status and not yet past its expiry."""
        return self.status == RoleStatus.ACTIVE and not self.is_expired(now)

    # Lifecycle transitions

    def revoke(self, revoked_by: Optional[str] = None, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> bool:
        """
        Revoke the assignment permanently.

        Args:
            revoked_by: Identifier of the acting user
            reason: Reason for revocation

        Returns:
            bool: True if the assignment was revoked, False if already revoked
        """
        if self.status == RoleStatus.REVOKED:
            return False

        current_time = now or now_utc()
        previous_status = self.status
        self.status = RoleStatus.REVOKED
        self.revoked_at = current_time
        self.revoked_by = revoked_by
        self.revocation_reason = reason

        self._add_audit_entry('revoked', {
            'revoked_by': revoked_by,
            'reason': reason,
            'previous_status': previous_status.value,
        }, current_time)
        return True

    def expire(self, now: Optional[datetime] = None) -> bool:
        """
        Mark an active assignment whose expiry has passed as expired.

        Returns:
            bool: True if the status changed
        """
        current_time = now or now_utc()
        if self.status != RoleStatus.ACTIVE or not self.is_expired(current_time):
            return False

        self.status = RoleStatus.EXPIRED
        self._add_audit_entry('expired', {
            'expires_at': format_for_audit(self.expires_at),
            'previous_status': RoleStatus.ACTIVE.value,
        }, current_time)
        return True

    def extend_expiration(self, new_expires_at: datetime, extended_by: Optional[str] = None,
                          reason: Optional[str] = None,
                          now: Optional[datetime] = None) -> bool:
        """
        Move the expiry later, reactivating an expired assignment.

        Args:
            new_expires_at: New expiration timestamp
            extended_by: Identifier of the acting user
            reason: Reason for extension

        Returns:
            bool: False if the assignment is revoked, True otherwise

        Raises:
            ValueError: If the new expiry is not in the future or not later
                than the current one
        """
        if self.status == RoleStatus.REVOKED:
            return False

        current_time = now or now_utc()
        new_expires_at = to_utc(new_expires_at)
        if new_expires_at <= current_time:
            raise ValueError("New expiration date must be in the future")

        old_expires_at = to_utc(self.expires_at)
        if old_expires_at is not None and new_expires_at <= old_expires_at:
            raise ValueError("New expiration date must be later than current expiration")

        previous_status = self.status
        self.expires_at = new_expires_at
        if self.status == RoleStatus.EXPIRED:
            self.status = RoleStatus.ACTIVE

        self._add_audit_entry('expiration_extended', {
            'extended_by': extended_by,
            'reason': reason,
            'old_expiration': format_for_audit(old_expires_at),
            'new_expiration': format_for_audit(new_expires_at),
            'previous_status': previous_status.value,
        }, current_time)
        return True

    def _add_audit_entry(self, action: str, details: Dict[str, Any],
                         timestamp: Optional[datetime] = None) -> None:
        """
        Append an entry to the audit trail.

        The list is replaced rather than mutated so the JSON column is
        flagged as changed.
        """
        entry = {
            'action': action,
            'timestamp': format_for_audit(timestamp or now_utc()),
            'details': details,
            'ip_address': request.remote_addr if has_request_context() else None,
        }
        trail = list(self.audit_trail or [])
        trail.append(entry)
        self.audit_trail = trail[-AUDIT_TRAIL_LIMIT:]

    # Conversion

    def to_assignment(self) -> UserRoleAssignment:
        """Immutable snapshot consumed by the permission checker."""
        return UserRoleAssignment(
            id=self.id,
            user_id=self.user_id,
            role=self.role,
            status=self.status,
            assigned_by=self.assigned_by,
            assigned_at=self.assigned_at,
            expires_at=self.expires_at,
            department_id=self.department_id,
            institution_id=self.institution_id,
            is_temporary=bool(self.is_temporary),
            metadata=self.assignment_metadata or {},
        )

    def to_dict(self, include_audit: bool = False) -> Dict[str, Any]:
        """
        Convert the record to a JSON-serializable dictionary.

        Args:
            include_audit: Whether to include audit fields and the audit trail
        """
        result = super().to_dict(
            exclude_fields=['assignment_metadata', 'audit_trail'],
            include_audit=include_audit,
        )
        result['metadata'] = dict(self.assignment_metadata or {})
        result['is_active'] = self.is_currently_active()
        if include_audit:
            result['audit_trail'] = list(self.audit_trail or [])
        return result

    def __repr__(self) -> str:
        return (f"<RoleAssignmentRecord {self.id} user={self.user_id} "
                f"role={self.role} status={self.status}>")


@event.listens_for(RoleAssignmentRecord, 'before_insert')
def assignment_before_insert(mapper, connection, target):
    """Record the creation in the audit trail and attribute the row."""
    if target.created_by is None:
        target.created_by = get_current_user_id() or target.assigned_by
    if not target.audit_trail:
        target._add_audit_entry('granted', {
            'assigned_by': target.assigned_by,
            'role': target.role.value if target.role else None,
            'department_id': target.department_id,
            'institution_id': target.institution_id,
            'expires_at': format_for_audit(target.expires_at),
        }, target.assigned_at)


@event.listens_for(RoleAssignmentRecord, 'before_update')
def assignment_before_update(mapper, connection, target):
    user_id = get_current_user_id()
    if user_id is not None:
        target.updated_by = user_id
