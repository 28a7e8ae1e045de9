"""
Route decorators enforcing access decisions.

Authentication happens upstream; the application factory copies the trusted
user id header into ``g.user_id``. These decorators only authorize:

- missing user id: 401
- denial: generic 403, the specific reason stays in the logs
- malformed resource context: 400
- undeterminable decision (AccessControlError): propagated to the error
  handlers, which log it at error level and answer 500

Context loaders receive the view's keyword arguments (URL parameters) and
return a ResourceContext or a mapping accepted by ResourceContext.from_mapping.
"""

import dataclasses
from functools import wraps
from typing import Any, Callable, Mapping, Optional, Union

from flask import abort, g

from services.extension import get_permission_checker
from services.permission_types import Action, PermissionScope, ResourceContext
from utils.logging import SecurityEventType, describe_request, log_security_event

ContextLoader = Callable[..., Optional[Union[ResourceContext, Mapping[str, Any]]]]


def authenticated_user_id() -> str:
    """The authenticated user id, aborting with 401 when there is none."""
    user_id = g.get('user_id')
    if not user_id:
        abort(401)
    return user_id


def deny(user_id: str, **details: Any) -> None:
    """Log the denial and abort with a generic 403."""
    log_security_event(
        SecurityEventType.AUTHORIZATION_FAILURE,
        "Access denied",
        denied_user_id=user_id,
        **details,
        **describe_request()
    )
    abort(403)


def _load_context(context_loader: Optional[ContextLoader], view_kwargs):
    if context_loader is None:
        return None
    return context_loader(**view_kwargs)


def require_permission(permission_name: str, context_loader: Optional[ContextLoader] = None):
    """
    Require ``permission_name`` for the current user.

    Args:
        permission_name: Dotted permission name
        context_loader: Optional callable building the resource context from
            the view's keyword arguments

    Usage Example:
        @bp.route('/classes/<class_id>', methods=['PUT'])
        @require_permission('class.update', context_loader=load_class_context)
        def update_class(class_id):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            user_id = authenticated_user_id()
            try:
                granted = get_permission_checker().has_permission(
                    user_id, permission_name, _load_context(context_loader, kwargs)
                )
            except (TypeError, ValueError):
                abort(400)
            if not granted:
                deny(user_id, permission=permission_name)
            return func(*args, **kwargs)
        return wrapper
    return decorator


def require_resource_access(resource_type: str, action: Union[Action, str],
                            context_loader: Optional[ContextLoader] = None,
                            resource_id_arg: str = 'resource_id'):
    """
    Require ``action`` on the resource named by the ``resource_id_arg`` URL
    parameter; ``{resource_type}.manage`` also satisfies it.

    Args:
        resource_type: Resource type, e.g. ``class``
        action: Action to authorize
        context_loader: Optional callable adding owner/department/institution
        resource_id_arg: Name of the view keyword argument holding the resource id
    """
    action = Action(action)

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            user_id = authenticated_user_id()
            resource_id = kwargs.get(resource_id_arg)
            if resource_id is None:
                abort(400)
            try:
                context = _load_context(context_loader, kwargs)
                if isinstance(context, ResourceContext):
                    context = dataclasses.replace(context, resource_type=resource_type)
                else:
                    context = dict(context or {})
                    context['resource_type'] = resource_type
                granted = get_permission_checker().can_access_resource(
                    user_id, str(resource_id), action, context
                )
            except (TypeError, ValueError):
                abort(400)
            if not granted:
                deny(user_id, resource_type=resource_type, action=action.value,
                     resource_id=str(resource_id))
            return func(*args, **kwargs)
        return wrapper
    return decorator


def require_admin(scope: Union[PermissionScope, str],
                  scope_id_loader: Optional[Callable[..., Optional[str]]] = None):
    """
    Require administration of ``scope`` (system, institution or department).

    Args:
        scope: Administrative scope
        scope_id_loader: Optional callable returning the institution or
            department id from the view's keyword arguments
    """
    scope = PermissionScope(scope)

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            user_id = authenticated_user_id()
            scope_id = scope_id_loader(**kwargs) if scope_id_loader else None
            if not get_permission_checker().is_admin(user_id, scope, scope_id):
                deny(user_id, admin_scope=scope.value, scope_id=scope_id)
            return func(*args, **kwargs)
        return wrapper
    return decorator
