"""
Role Assignment API Blueprint

Lifecycle endpoints for role assignments. Every mutation goes through
RoleAssignmentService, which invalidates the permission cache of the affected
user after commit and before the response is sent.

Endpoints:
- POST /api/role-assignments                        grant a role (role.assign)
- GET  /api/role-assignments/<id>                   assignment with audit trail (role.audit)
- POST /api/role-assignments/<id>/revoke            revoke (role.revoke)
- POST /api/role-assignments/<id>/extend            extend expiry (role.assign)
- GET  /api/role-assignments/users/<user_id>        a user's assignments (self or role.audit)
- GET  /api/role-assignments/expiring               assignments expiring soon (role.audit)
- POST /api/role-assignments/expire                 expiry sweep (system administrators)

Role permissions are institution scoped: the acting user must hold the
permission for the institution of the assignment being changed. Changes are
also capped at the actor's own rank and never involve system_admin; grants
and extensions cannot target the actor. System administrators may manage
every assignment.
"""

from datetime import timedelta
from typing import Optional

from flask import Blueprint, jsonify, request
from marshmallow import Schema, fields as ma_fields, validate

from blueprints.decorators import authenticated_user_id, deny, require_admin
from services.extension import get_permission_checker, get_role_assignment_service
from services.permission_types import PermissionScope, UserRole, role_at_least

role_assignments_bp = Blueprint('role_assignments', __name__, url_prefix='/api/role-assignments')


# =============================================================================
# MARSHMALLOW SCHEMAS FOR REQUEST VALIDATION
# =============================================================================

class GrantRoleSchema(Schema):
    """Role grant request."""

    user_id = ma_fields.Str(required=True, validate=validate.Length(min=1, max=255))
    role = ma_fields.Str(
        required=True,
        validate=validate.OneOf([r.value for r in UserRole])
    )
    department_id = ma_fields.Str(required=False, allow_none=True)
    institution_id = ma_fields.Str(required=False, allow_none=True)
    expires_at = ma_fields.DateTime(required=False, allow_none=True)
    is_temporary = ma_fields.Bool(required=False, load_default=False)
    metadata = ma_fields.Dict(required=False, load_default=dict)


class RevokeRoleSchema(Schema):
    reason = ma_fields.Str(required=False, allow_none=True, validate=validate.Length(max=1000))


class ExtendRoleSchema(Schema):
    expires_at = ma_fields.DateTime(required=True)
    reason = ma_fields.Str(required=False, allow_none=True, validate=validate.Length(max=1000))


class UserAssignmentsQuerySchema(Schema):
    include_inactive = ma_fields.Bool(required=False, load_default=False)
    institution_id = ma_fields.Str(required=False)


class ExpiringQuerySchema(Schema):
    days = ma_fields.Int(required=False, load_default=7, validate=validate.Range(min=1, max=365))
    institution_id = ma_fields.Str(required=False)


def _json_body():
    return request.get_json(silent=True) or {}


def _authorize(user_id: str, permission_name: str, target_user_id: str,
               institution_id: Optional[str], department_id: Optional[str]) -> None:
    """Abort with 403 unless ``user_id`` holds ``permission_name`` for the assignment's institution."""
    checker = get_permission_checker()
    context = {
        'resource_id': target_user_id,
        'resource_type': 'role',
        'institution_id': institution_id,
        'department_id': department_id,
    }
    if checker.has_permission(user_id, permission_name, context):
        return
    if checker.is_admin(user_id, PermissionScope.SYSTEM):
        return
    deny(user_id, permission=permission_name, target_user_id=target_user_id)


def _authorize_role_level(actor: str, role: UserRole, target_user_id: str,
                          allow_self: bool = False) -> None:
    """
    Abort with 403 when a role change would escalate privileges.

    System administrators may change any assignment. Anyone else needs an
    active role ranked at least as high as ``role``, can never hand out
    system_admin and, unless ``allow_self``, cannot change their own roles.
    """
    actor_roles = get_permission_checker().get_user_roles(actor)
    if UserRole.SYSTEM_ADMIN in actor_roles:
        return
    if target_user_id == actor and not allow_self:
        deny(actor, denial_reason='self_assignment', role=role.value,
             target_user_id=target_user_id)
    if role == UserRole.SYSTEM_ADMIN or not any(role_at_least(r, role) for r in actor_roles):
        deny(actor, denial_reason='role_above_actor', role=role.value,
             target_user_id=target_user_id)


# =============================================================================
# ROUTES
# =============================================================================

@role_assignments_bp.route('', methods=['POST'])
def grant_role():
    """Grant a role. Temporary grants require a future expires_at."""
    actor = authenticated_user_id()
    data = GrantRoleSchema().load(_json_body())
    _authorize(actor, 'role.assign', data['user_id'],
               data.get('institution_id'), data.get('department_id'))
    _authorize_role_level(actor, UserRole(data['role']), data['user_id'])

    record = get_role_assignment_service().grant_role(
        user_id=data['user_id'],
        role=data['role'],
        assigned_by=actor,
        department_id=data.get('department_id'),
        institution_id=data.get('institution_id'),
        expires_at=data.get('expires_at'),
        is_temporary=data['is_temporary'],
        metadata=data['metadata'],
    )
    return jsonify({'assignment': record.to_dict()}), 201


@role_assignments_bp.route('/<assignment_id>', methods=['GET'])
def get_assignment(assignment_id):
    actor = authenticated_user_id()
    service = get_role_assignment_service()
    record = service.get_assignment(assignment_id)
    if record.user_id != actor:
        _authorize(actor, 'role.audit', record.user_id,
                   record.institution_id, record.department_id)
    return jsonify({'assignment': record.to_dict(include_audit=True)})


@role_assignments_bp.route('/<assignment_id>/revoke', methods=['POST'])
def revoke_role(assignment_id):
    actor = authenticated_user_id()
    data = RevokeRoleSchema().load(_json_body())
    service = get_role_assignment_service()
    record = service.get_assignment(assignment_id)
    _authorize(actor, 'role.revoke', record.user_id,
               record.institution_id, record.department_id)
    _authorize_role_level(actor, record.role, record.user_id, allow_self=True)

    record = service.revoke_role(assignment_id, revoked_by=actor, reason=data.get('reason'))
    return jsonify({'assignment': record.to_dict()})


@role_assignments_bp.route('/<assignment_id>/extend', methods=['POST'])
def extend_role(assignment_id):
    actor = authenticated_user_id()
    data = ExtendRoleSchema().load(_json_body())
    service = get_role_assignment_service()
    record = service.get_assignment(assignment_id)
    _authorize(actor, 'role.assign', record.user_id,
               record.institution_id, record.department_id)
    _authorize_role_level(actor, record.role, record.user_id)

    record = service.extend_assignment(
        assignment_id,
        new_expires_at=data['expires_at'],
        extended_by=actor,
        reason=data.get('reason'),
    )
    return jsonify({'assignment': record.to_dict()})


@role_assignments_bp.route('/users/<user_id>', methods=['GET'])
def list_user_assignments(user_id):
    """
    A user may always list their own assignments. Listing another user's
    requires role.audit for the institution given by ``institution_id``,
    and only assignments in that institution are returned.
    """
    actor = authenticated_user_id()
    query = UserAssignmentsQuerySchema().load(request.args.to_dict())
    institution_id = query.get('institution_id')
    if user_id != actor:
        _authorize(actor, 'role.audit', user_id, institution_id, None)

    records = get_role_assignment_service().get_user_assignments(
        user_id, include_inactive=query['include_inactive']
    )
    if institution_id:
        records = [record for record in records if record.institution_id == institution_id]
    return jsonify({
        'user_id': user_id,
        'assignments': [record.to_dict() for record in records],
        'count': len(records),
    })


@role_assignments_bp.route('/expiring', methods=['GET'])
def list_expiring_assignments():
    actor = authenticated_user_id()
    query = ExpiringQuerySchema().load(request.args.to_dict())
    _authorize(actor, 'role.audit', 'expiring', query.get('institution_id'), None)
    records = get_role_assignment_service().get_expiring_assignments(
        within=timedelta(days=query['days']),
        institution_id=query.get('institution_id'),
    )
    return jsonify({
        'assignments': [record.to_dict() for record in records],
        'count': len(records),
    })


@role_assignments_bp.route('/expire', methods=['POST'])
@require_admin(PermissionScope.SYSTEM)
def expire_assignments():
    """Run the expiry sweep; normally triggered by a scheduler."""
    expired = get_role_assignment_service().expire_assignments()
    return jsonify({'expired': expired})
