"""
Health check endpoints for the provisioning gateway.

/health is a plain liveness check; /readyz also verifies the lock store,
since registrations cannot proceed without it.
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify

from config.redis_client import redis_available
from gateway.extensions import get_lock_store

# Create blueprint
health_bp = Blueprint('health', __name__)


@health_bp.route('/health')
def liveness():
    """Liveness check - is the process running?"""
    return "ok", 200, {'Content-Type': 'text/plain; charset=utf-8'}


@health_bp.route('/readyz')
def readiness():
    """
    Readiness check - can the gateway take registrations?

    Returns 503 while Redis is unreachable.
    """
    redis_ok = redis_available(get_lock_store())

    return jsonify({
        "status": "ready" if redis_ok else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "redis": "connected" if redis_ok else "connection failed",
    }), 200 if redis_ok else 503
