"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  - simple 200 for load balancers
    GET /api/v1/health/live   - database reachability and table counts
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from pipetrak.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

_TABLES = (
    "pipetrak_projects",
    "pipetrak_milestone_templates",
    "pipetrak_components",
    "pipetrak_component_milestones",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe - always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check: database round trip plus row counts of the core tables."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check - database failed: %s", exc)

    if overall:
        tables = {}
        for tbl in _TABLES:
            try:
                tables[tbl] = db.session.execute(db.text(f"SELECT COUNT(*) FROM {tbl}")).scalar()
            except Exception as exc:
                tables[tbl] = f"error: {exc}"
                overall = False
        checks["tables"] = tables

    checks["app"] = {
        "name": "PipeTrak Milestones",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
