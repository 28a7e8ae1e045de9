"""
Permission Query API Blueprint

Read-only endpoints over the permission checker for the authenticated user.
Responses never include the internal reason for a denial.

Endpoints:
- GET  /api/permissions/catalog         permission catalog, filterable by category and scope
- GET  /api/permissions/me              capability listing for UI gating
- POST /api/permissions/check           single permission check
- POST /api/permissions/check-resource  resource/action check
- POST /api/permissions/check-bulk      bulk check with per-entry isolation
- GET  /api/permissions/admin           administrative scope check
"""

from flask import Blueprint, jsonify, request
from marshmallow import Schema, fields as ma_fields, validate

from blueprints.decorators import authenticated_user_id
from services.base_service import ValidationError
from services.extension import get_permission_checker
from services.permission_types import Action, PermissionCategory, PermissionScope

permissions_bp = Blueprint('permissions', __name__, url_prefix='/api/permissions')


# =============================================================================
# MARSHMALLOW SCHEMAS FOR REQUEST VALIDATION
# =============================================================================

class CatalogQuerySchema(Schema):
    """Optional catalog filters."""

    category = ma_fields.Str(
        required=False,
        validate=validate.OneOf([c.value for c in PermissionCategory])
    )
    scope = ma_fields.Str(
        required=False,
        validate=validate.OneOf([s.value for s in PermissionScope])
    )


class PermissionCheckSchema(Schema):
    """Single permission check request."""

    permission = ma_fields.Str(required=True, validate=validate.Length(min=1, max=100))
    context = ma_fields.Dict(required=False, allow_none=True)


class ResourceCheckSchema(Schema):
    """Resource/action check request."""

    resource_id = ma_fields.Str(required=True, validate=validate.Length(min=1))
    action = ma_fields.Str(
        required=True,
        validate=validate.OneOf([a.value for a in Action])
    )
    context = ma_fields.Dict(required=False, allow_none=True)


class BulkCheckSchema(Schema):
    """
    Bulk check request.

    Entries are validated one by one by the checker so that a malformed
    entry only fails itself.
    """

    checks = ma_fields.List(ma_fields.Raw(), required=True)


class AdminQuerySchema(Schema):
    """Administrative scope query."""

    scope = ma_fields.Str(
        required=True,
        validate=validate.OneOf([
            PermissionScope.SYSTEM.value,
            PermissionScope.INSTITUTION.value,
            PermissionScope.DEPARTMENT.value,
        ])
    )
    scope_id = ma_fields.Str(required=False)


def _json_body():
    return request.get_json(silent=True) or {}


# =============================================================================
# ROUTES
# =============================================================================

@permissions_bp.route('/catalog', methods=['GET'])
def get_catalog():
    """List the permission catalog."""
    authenticated_user_id()
    filters = CatalogQuerySchema().load(request.args.to_dict())
    registry = get_permission_checker().registry

    permissions = registry.all_permissions()
    if 'category' in filters:
        permissions = [p for p in permissions if p.category.value == filters['category']]
    if 'scope' in filters:
        permissions = [p for p in permissions if p.scope.value == filters['scope']]

    return jsonify({
        'permissions': [p.to_dict() for p in permissions],
        'count': len(permissions),
    })


@permissions_bp.route('/me', methods=['GET'])
def get_my_permissions():
    """
    Capability listing for the current user.

    Ignores scope and conditions; use the check endpoints for decisions.
    """
    user_id = authenticated_user_id()
    permissions = get_permission_checker().get_user_permissions(user_id)
    return jsonify({
        'user_id': user_id,
        'permissions': [p.name for p in permissions],
    })


@permissions_bp.route('/check', methods=['POST'])
def check_permission():
    user_id = authenticated_user_id()
    data = PermissionCheckSchema().load(_json_body())
    try:
        granted = get_permission_checker().has_permission(
            user_id, data['permission'], data.get('context')
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(str(e)) from e
    return jsonify({'permission': data['permission'], 'granted': granted})


@permissions_bp.route('/check-resource', methods=['POST'])
def check_resource_access():
    user_id = authenticated_user_id()
    data = ResourceCheckSchema().load(_json_body())
    try:
        granted = get_permission_checker().can_access_resource(
            user_id, data['resource_id'], data['action'], data.get('context')
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(str(e)) from e
    return jsonify({
        'resource_id': data['resource_id'],
        'action': data['action'],
        'granted': granted,
    })


@permissions_bp.route('/check-bulk', methods=['POST'])
def check_bulk_permissions():
    """
    Evaluate several checks in one call.

    Returns 400 when more entries than PERMISSION_BULK_CHECK_LIMIT are sent.
    """
    user_id = authenticated_user_id()
    data = BulkCheckSchema().load(_json_body())
    results = get_permission_checker().check_bulk_permissions(user_id, data['checks'])
    return jsonify({
        'results': [result.to_dict() for result in results],
        'count': len(results),
    })


@permissions_bp.route('/admin', methods=['GET'])
def check_admin():
    user_id = authenticated_user_id()
    query = AdminQuerySchema().load(request.args.to_dict())
    is_admin = get_permission_checker().is_admin(
        user_id, query['scope'], query.get('scope_id')
    )
    return jsonify({
        'scope': query['scope'],
        'scope_id': query.get('scope_id'),
        'is_admin': is_admin,
    })
