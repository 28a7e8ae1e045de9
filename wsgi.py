"""
WSGI Entry Point for Production Deployment

Gunicorn Configuration Example:
    gunicorn --bind 0.0.0.0:8000 --workers 4 wsgi:application

Each worker process builds its own application and therefore its own
permission decision cache. Role changes made through one worker invalidate
only that worker's cache; register an invalidation listener on the
PermissionServices extension to fan changes out, or keep
PERMISSION_CACHE_TTL short.

Kubernetes Health Checks:
    livenessProbe:  GET /health/liveness
    readinessProbe: GET /health/readiness
"""

from app import create_app

application = create_app()

if __name__ == '__main__':
    application.run(host='0.0.0.0', port=8000)
