"""
Flask Blueprint Package Initialization

Centralized blueprint registration for the application factory.

Blueprint Organization:
- health_bp: liveness, readiness and Prometheus metrics endpoints
- permissions_bp: permission catalog and access checks for the current user
- role_assignments_bp: role assignment lifecycle endpoints

The require_* decorators in blueprints.decorators guard routes of any
blueprint with permission, resource/action and administrative-scope checks.
"""

from typing import Dict

from flask import Flask

from utils.logging import get_logger

from .health import health_bp
from .permissions import permissions_bp
from .role_assignments import role_assignments_bp

logger = get_logger(__name__)

BLUEPRINTS = (
    health_bp,
    permissions_bp,
    role_assignments_bp,
)


def register_blueprints(app: Flask) -> Dict[str, bool]:
    """
    Register every application blueprint.

    Args:
        app: Flask application instance

    Returns:
        Dict[str, bool]: Registration result per blueprint name
    """
    results: Dict[str, bool] = {}
    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)
        results[blueprint.name] = True
        logger.debug(
            "blueprint_registered",
            blueprint=blueprint.name,
            url_prefix=blueprint.url_prefix,
        )
    logger.info("blueprints_registered", count=len(results))
    return results
