# Overview: Health endpoint: database reachability, upstream reachability, queue depth.

import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from ..services import sync_service
from ..services.backend_client import get_upstream_client
from tavola.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
        }
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Liveness plus dependency status. 200 while the local database answers;
    an unreachable upstream only degrades the status (orders still queue).
    """
    database = check_database_health()
    upstream_online = get_upstream_client().is_online()
    queue = sync_service.get_queue_stats() if database["status"] == "healthy" else None

    if database["status"] != "healthy":
        status = "unhealthy"
    elif not upstream_online:
        status = "degraded"
    else:
        status = "healthy"

    return jsonify({
        "status": status,
        "timestamp": to_utc_z(utcnow()),
        "database": database,
        "upstream": {"online": upstream_online},
        "sync_queue": queue,
    }), 200 if status != "unhealthy" else 503
