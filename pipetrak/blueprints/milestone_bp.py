"""PipeTrak milestone blueprint.

REST API for component milestones, consumed by the browser UI and by
PipeTrakGateway.

Endpoint groups:
  Component listing   GET   /api/v1/pipetrak/projects/<pid>/components
                      GET   /api/v1/pipetrak/projects/<pid>/components/<cid>
  Button states       GET   /api/v1/pipetrak/projects/<pid>/components/<cid>/milestone-states
  Single update       PATCH /api/v1/pipetrak/projects/<pid>/components/<cid>/milestones/<mid>
  Bulk update         POST  /api/v1/pipetrak/projects/<pid>/milestones/bulk-update
  Statistics          GET   /api/v1/pipetrak/projects/<pid>/milestones/stats
  Templates           GET   /api/v1/pipetrak/projects/<pid>/milestone-templates

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request
from sqlalchemy import select

import pipetrak.services.milestone_persistence_service as mps
from pipetrak.core.exceptions import (
    ConflictError,
    NotFoundError,
    SequenceBlockedError,
    ValidationError,
)
from pipetrak.models import db
from pipetrak.models.pipetrak import MilestoneTemplate
from pipetrak.services.milestone_sequencing import (
    classify_milestone_state,
    describe_block_reason,
)
from pipetrak.utils.errors import E, api_error

logger = logging.getLogger(__name__)

milestone_bp = Blueprint("milestones", __name__, url_prefix="/api/v1/pipetrak")

MAX_BULK_COMPONENTS = 1000


def _actor() -> str | None:
    return request.headers.get("X-PipeTrak-User") or getattr(g, "request_id", None)


# ── Error handlers ────────────────────────────────────────────────────────────


@milestone_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@milestone_bp.errorhandler(SequenceBlockedError)
def _handle_sequence_blocked(error: SequenceBlockedError):
    return api_error(E.SEQUENCE_BLOCKED, error.message, details=error.details)


@milestone_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, error.message, details=error.details)


@milestone_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


# ═════════════════════════════════════════════════════════════════════════
# Components
# ═════════════════════════════════════════════════════════════════════════


@milestone_bp.route("/projects/<int:project_id>/components", methods=["GET"])
def list_components(project_id):
    """List components with their milestones.

    Query params: drawing_id?, template_id?
    Returns: {"items": [ComponentWithMilestones], "total": n}
    """
    components = mps.list_project_components(
        project_id,
        drawing_id=request.args.get("drawing_id", type=int),
        template_id=request.args.get("template_id", type=int),
    )
    items = [c.to_dict() for c in components]
    return jsonify({"items": items, "total": len(items)}), 200


@milestone_bp.route("/projects/<int:project_id>/components/<int:component_id>", methods=["GET"])
def get_component(project_id, component_id):
    component = mps.get_component(project_id, component_id)
    return jsonify(component.to_dict()), 200


@milestone_bp.route(
    "/projects/<int:project_id>/components/<int:component_id>/milestone-states",
    methods=["GET"],
)
def milestone_states(project_id, component_id):
    """Button state of every milestone (available / dependent / blocked / complete)."""
    view = mps.get_component(project_id, component_id).to_view()
    states = []
    for milestone in view.canonical_milestones:
        state = classify_milestone_state(milestone, view.milestones, view.workflow_type)
        states.append({
            "milestone_id": milestone.id,
            "milestone_name": milestone.name,
            "milestone_order": milestone.order,
            "state": state.value,
            "reason": describe_block_reason(milestone, view.milestones, view.workflow_type),
        })
    return jsonify({
        "component_id": view.id,
        "completion_percent": view.completion_percent,
        "status": view.status.value,
        "states": states,
    }), 200


# ═════════════════════════════════════════════════════════════════════════
# Milestone updates
# ═════════════════════════════════════════════════════════════════════════


@milestone_bp.route(
    "/projects/<int:project_id>/components/<int:component_id>/milestones/<int:milestone_id>",
    methods=["PATCH"],
)
def update_milestone(project_id, component_id, milestone_id):
    """Apply one milestone value.

    Body: {"value": bool | number} or {"complete": bool}
    Returns: {"milestone": {...}, "component": {...}}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or ("value" not in data and "complete" not in data):
        return api_error(E.VALIDATION_REQUIRED, "value or complete is required")

    payload = {k: data[k] for k in ("value", "complete") if k in data}
    milestone, component = mps.update_component_milestone(
        project_id, component_id, milestone_id, payload, actor=_actor(),
    )
    return jsonify({"milestone": milestone.to_dict(), "component": component.to_dict()}), 200


@milestone_bp.route("/projects/<int:project_id>/milestones/bulk-update", methods=["POST"])
def bulk_update(project_id):
    """Apply updates to many components; per-item outcomes, never all-or-nothing by default.

    Body: {
        component_ids: [...],
        updates: [{milestone_name, complete} | {milestone_name, value}],
        options?: {atomic: false, validate_only: false}
    }
    Returns: {"successful": [...], "failed": [...], "total": n, "components": [...]}
    """
    data = request.get_json(silent=True) or {}

    component_ids = data.get("component_ids")
    if not isinstance(component_ids, list) or not component_ids:
        return api_error(E.VALIDATION_REQUIRED, "component_ids is required")
    if len(component_ids) > MAX_BULK_COMPONENTS:
        return api_error(
            E.VALIDATION_CONSTRAINT,
            f"component_ids must contain at most {MAX_BULK_COMPONENTS} items",
        )

    updates = data.get("updates")
    if not isinstance(updates, list) or not updates:
        return api_error(E.VALIDATION_REQUIRED, "updates is required")
    for index, update in enumerate(updates):
        if not isinstance(update, dict) or not isinstance(update.get("milestone_name"), str):
            return api_error(E.VALIDATION_INVALID, f"updates[{index}].milestone_name is required")
        if "complete" not in update and "value" not in update:
            return api_error(E.VALIDATION_INVALID, f"updates[{index}] needs complete or value")

    options = data.get("options") or {}
    result = mps.bulk_update_milestones(
        project_id,
        component_ids,
        updates,
        atomic=bool(options.get("atomic", False)),
        validate_only=bool(options.get("validate_only", False)),
        actor=_actor(),
    )
    return jsonify(result), 200


@milestone_bp.route("/projects/<int:project_id>/milestones/stats", methods=["GET"])
def stats(project_id):
    return jsonify(mps.milestone_stats(project_id)), 200


@milestone_bp.route("/projects/<int:project_id>/milestone-templates", methods=["GET"])
def list_templates(project_id):
    mps.get_project(project_id)
    templates = db.session.execute(
        select(MilestoneTemplate)
        .where(MilestoneTemplate.project_id == project_id)
        .order_by(MilestoneTemplate.id)
    ).scalars()
    return jsonify({"items": [t.to_dict() for t in templates]}), 200
