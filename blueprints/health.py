"""
Health Check and Metrics Blueprint

Probe endpoints for container orchestration and the Prometheus scrape
endpoint exposing the access-control counters from utils.monitoring.

Endpoints:
- GET /health/liveness   process is responsive
- GET /health/readiness  database reachable and permission services initialized
- GET /health/metrics    Prometheus exposition format
"""

from datetime import datetime, timezone

from flask import Blueprint, Response, current_app, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from models import check_database_health
from services.extension import EXTENSION_KEY
from utils.logging import get_logger

logger = get_logger(__name__)

health_bp = Blueprint('health', __name__, url_prefix='/health')


@health_bp.route('/liveness', methods=['GET'])
def liveness_probe():
    """Minimal responsiveness check."""
    return jsonify({
        'status': 'healthy',
        'service': current_app.config.get('APP_NAME', 'access-control'),
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'check_type': 'liveness',
    }), 200


@health_bp.route('/readiness', methods=['GET'])
def readiness_probe():
    """
    Ready when the database answers and the permission checker is installed.

    HTTP Status Codes:
        200: Ready to serve traffic
        503: Database unavailable or permission services missing
    """
    database = check_database_health()
    services = current_app.extensions.get(EXTENSION_KEY)
    is_ready = database['healthy'] and services is not None

    response_data = {
        'status': 'ready' if is_ready else 'not_ready',
        'checks': {
            'database': 'connected' if database['healthy'] else 'unavailable',
            'permission_services': 'initialized' if services is not None else 'missing',
        },
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }
    if services is not None:
        response_data['permission_cache'] = services.checker.cache_stats().to_dict()

    if not is_ready:
        logger.warning("readiness_probe_failed", checks=response_data['checks'])
    return jsonify(response_data), 200 if is_ready else 503


@health_bp.route('/metrics', methods=['GET'])
def metrics():
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
