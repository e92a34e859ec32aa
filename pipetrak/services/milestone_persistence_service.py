"""
Milestone Persistence - Service Layer.

Server side of the milestone update contract. Business logic for:
    - Single milestone update:   value by workflow type, completion stamps, audit rows
    - Bulk milestone update:     per-item savepoints, best effort by default,
                                 ``atomic`` (all-or-nothing) and ``validate_only`` (dry run)
    - Roll-up recalculation:     component completion_percent / status
    - Component listing:         project-scoped, filterable by drawing / template
    - Milestone statistics:      per milestone name totals for a project
    - Template seeding:          default ROC-aligned templates per project

All lookups are scoped by project_id; a component of another project is
reported exactly like a missing one.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import case, func, select

from pipetrak.core.exceptions import NotFoundError, SequenceBlockedError, ValidationError
from pipetrak.models import db
from pipetrak.models.pipetrak import (
    DEFAULT_MILESTONE_TEMPLATES,
    WORKFLOW_TYPES,
    Component,
    ComponentMilestone,
    Drawing,
    MilestoneAuditLog,
    MilestoneTemplate,
    Project,
    validate_template_definition,
)
from pipetrak.services.milestone_sequencing import (
    can_complete_milestone,
    can_uncomplete_milestone,
    describe_block_reason,
)
from pipetrak.services.milestone_state import WorkflowType

logger = logging.getLogger(__name__)

# Per-item error texts returned in bulk ``failed`` entries
ERR_COMPONENT_NOT_FOUND = "Component not found"
ERR_MILESTONE_NOT_FOUND = "Milestone not found"
ERR_INVALID_UPDATE = "Invalid update for workflow type"
ERR_ATOMIC_ABORTED = "Not applied: atomic update aborted"

_AUDITED_FIELDS = (
    "is_completed",
    "percentage_complete",
    "quantity_complete",
    "completed_at",
    "completed_by",
)


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def get_component(project_id: int, component_id: int) -> Component:
    """Return a component of the project or raise NotFoundError."""
    component = db.session.execute(
        select(Component).where(
            Component.id == component_id,
            Component.project_id == project_id,
        )
    ).scalar_one_or_none()
    if component is None:
        raise NotFoundError(resource="Component", resource_id=component_id, project_id=project_id)
    return component


def get_component_milestone(project_id: int, component_id: int, milestone_id: int) -> ComponentMilestone:
    component = get_component(project_id, component_id)
    for milestone in component.milestones:
        if milestone.id == milestone_id:
            return milestone
    raise NotFoundError(resource="Milestone", resource_id=milestone_id, project_id=project_id)


def list_project_components(
    project_id: int,
    *,
    drawing_id: int | None = None,
    template_id: int | None = None,
) -> list[Component]:
    """Components of a project ordered by component code, optionally filtered."""
    get_project(project_id)
    stmt = select(Component).where(Component.project_id == project_id)
    if drawing_id is not None:
        stmt = stmt.where(Component.drawing_id == drawing_id)
    if template_id is not None:
        stmt = stmt.where(Component.milestone_template_id == template_id)
    stmt = stmt.order_by(Component.component_code)
    return list(db.session.execute(stmt).scalars())


# ── Value resolution ─────────────────────────────────────────────────────────


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def resolve_completion_fields(workflow_type, milestone: ComponentMilestone, payload: dict) -> dict:
    """
    Translate an update payload into the milestone columns to write.

    ``payload`` carries either ``complete`` (bool, any workflow type) or
    ``value`` (bool for discrete, whole number 0–100 for percentage, 0..quantity_total
    for quantity).

    Raises:
        ValidationError: value missing, of the wrong kind, or out of range.
    """
    wf = WorkflowType.parse(workflow_type)
    has_complete = "complete" in payload
    has_value = "value" in payload

    if wf is WorkflowType.DISCRETE:
        raw = payload["complete"] if has_complete else payload.get("value")
        if not isinstance(raw, bool):
            raise ValidationError(ERR_INVALID_UPDATE, details={"workflow_type": wf.value})
        return {"is_completed": raw}

    if wf is WorkflowType.PERCENTAGE:
        if has_complete and isinstance(payload["complete"], bool):
            value = 100 if payload["complete"] else 0
        elif has_value and _is_number(payload["value"]):
            value = payload["value"]
        else:
            raise ValidationError(ERR_INVALID_UPDATE, details={"workflow_type": wf.value})
        if isinstance(value, float) and not value.is_integer():
            raise ValidationError("Percentage must be a whole number", details={"value": value})
        if value < 0 or value > 100:
            raise ValidationError(
                "Percentage must be between 0 and 100",
                details={"value": value},
            )
        return {"percentage_complete": float(value), "is_completed": value >= 100}

    total = milestone.quantity_total or 0
    if total <= 0:
        raise ValidationError(
            "Milestone has no quantity total",
            details={"milestone_id": milestone.id},
        )
    if has_complete and isinstance(payload["complete"], bool):
        value = total if payload["complete"] else 0
    elif has_value and _is_number(payload["value"]):
        value = payload["value"]
    else:
        raise ValidationError(ERR_INVALID_UPDATE, details={"workflow_type": wf.value})
    if value < 0 or value > total:
        raise ValidationError(
            f"Quantity must be between 0 and {total:g}",
            details={"value": value, "quantity_total": total},
        )
    return {"quantity_complete": float(value), "is_completed": value >= total}


# ── Recalculation ────────────────────────────────────────────────────────────


def recalculate_component_completion(component: Component) -> Component:
    """Re-derive completion_percent / status from the milestones. Does not commit."""
    view = component.to_view()
    component.completion_percent = view.completion_percent
    component.status = view.status.value
    return component


# ── Apply ────────────────────────────────────────────────────────────────────


def _audit_value(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _apply_fields(
    project_id: int,
    component: Component,
    milestone: ComponentMilestone,
    fields: dict,
    actor: str | None,
) -> None:
    """Write resolved fields, stamp completion and add audit rows. Does not commit."""
    before = {name: getattr(milestone, name) for name in _AUDITED_FIELDS}

    for name, value in fields.items():
        setattr(milestone, name, value)
    if milestone.is_completed and not before["is_completed"]:
        milestone.completed_at = datetime.now(timezone.utc)
        milestone.completed_by = actor
    elif not milestone.is_completed:
        milestone.completed_at = None
        milestone.completed_by = None

    for name in _AUDITED_FIELDS:
        old, new = before[name], getattr(milestone, name)
        if old == new:
            continue
        db.session.add(MilestoneAuditLog(
            project_id=project_id,
            component_id=component.id,
            milestone_id=milestone.id,
            field_name=name,
            old_value=_audit_value(old),
            new_value=_audit_value(new),
            changed_by=actor,
        ))

    recalculate_component_completion(component)


def _check_sequence(component: Component, milestone: ComponentMilestone, fields: dict) -> None:
    view = component.to_view()
    target = view.get_milestone(milestone.id)
    completing = fields.get("is_completed") and not milestone.is_completed
    uncompleting = milestone.is_completed and fields.get("is_completed") is False

    if completing and not can_complete_milestone(target, view.milestones, view.workflow_type):
        reason = describe_block_reason(target, view.milestones, view.workflow_type)
        raise SequenceBlockedError(reason, details={"milestone_id": milestone.id})
    if uncompleting and not can_uncomplete_milestone(target, view.milestones, view.workflow_type):
        raise SequenceBlockedError(
            f"{milestone.milestone_name} cannot be uncompleted while a later milestone is complete",
            details={"milestone_id": milestone.id},
        )


def update_component_milestone(
    project_id: int,
    component_id: int,
    milestone_id: int,
    payload: dict,
    *,
    actor: str | None = None,
    enforce_sequence: bool = True,
) -> tuple[ComponentMilestone, Component]:
    """
    Apply one milestone update and commit.

    Returns:
        (milestone, component) after the change.

    Raises:
        NotFoundError: component or milestone not in this project.
        ValidationError: value invalid for the component's workflow type.
        SequenceBlockedError: the change violates the sequencing rules.
    """
    milestone = get_component_milestone(project_id, component_id, milestone_id)
    component = milestone.component
    fields = resolve_completion_fields(component.workflow_type, milestone, payload)
    if enforce_sequence:
        _check_sequence(component, milestone, fields)

    _apply_fields(project_id, component, milestone, fields, actor)
    db.session.commit()
    logger.info(
        "Milestone updated: component=%s milestone=%s %s",
        component.component_code, milestone.milestone_name, fields,
        extra={"project_id": project_id, "component_id": component_id, "milestone_id": milestone_id},
    )
    return milestone, component


def bulk_update_milestones(
    project_id: int,
    component_ids: list,
    updates: list[dict],
    *,
    atomic: bool = False,
    validate_only: bool = False,
    actor: str | None = None,
) -> dict:
    """
    Apply every update to every listed component.

    Each (component, milestone name) pair is applied in its own savepoint, so
    one rejected pair never undoes another. With ``atomic`` any failure rolls
    the whole request back; with ``validate_only`` nothing is written.

    Returns:
        {"successful": [...], "failed": [...], "total": n, "components": [...]}
        where every pair appears exactly once in successful or failed.
    """
    get_project(project_id)
    if not updates:
        raise ValidationError("updates must not be empty")

    seen = set()
    unique_ids = []
    for cid in component_ids:
        key = str(cid)
        if key not in seen:
            seen.add(key)
            unique_ids.append(cid)

    successful: list[dict] = []
    failed: list[dict] = []
    touched: dict[int, Component] = {}

    for cid in unique_ids:
        component = None
        if _is_number(cid) or str(cid).isdigit():
            component = db.session.execute(
                select(Component).where(
                    Component.id == int(cid),
                    Component.project_id == project_id,
                )
            ).scalar_one_or_none()

        for update in updates:
            name = update.get("milestone_name")
            if component is None:
                failed.append({"component_id": cid, "milestone_name": name, "error": ERR_COMPONENT_NOT_FOUND})
                continue
            milestone = next((m for m in component.milestones if m.milestone_name == name), None)
            if milestone is None:
                failed.append({
                    "component_id": component.id,
                    "component_code": component.component_code,
                    "milestone_name": name,
                    "error": ERR_MILESTONE_NOT_FOUND,
                })
                continue
            try:
                with db.session.begin_nested():
                    fields = resolve_completion_fields(component.workflow_type, milestone, update)
                    _apply_fields(project_id, component, milestone, fields, actor)
            except ValidationError as exc:
                failed.append({
                    "component_id": component.id,
                    "component_code": component.component_code,
                    "milestone_name": name,
                    "error": exc.message,
                })
                continue
            touched[component.id] = component
            successful.append({
                "component_id": component.id,
                "component_code": component.component_code,
                "milestone_id": milestone.id,
                "milestone_name": name,
            })

    total = len(unique_ids) * len(updates)

    if validate_only:
        db.session.rollback()
        logger.info(
            "Bulk update dry run: project=%s ok=%d failed=%d",
            project_id, len(successful), len(failed),
            extra={"project_id": project_id},
        )
        return {"successful": successful, "failed": failed, "total": total, "components": []}

    if atomic and failed:
        db.session.rollback()
        aborted = [
            {**item, "error": ERR_ATOMIC_ABORTED}
            for item in successful
        ]
        logger.warning(
            "Atomic bulk update aborted: project=%s failures=%d",
            project_id, len(failed), extra={"project_id": project_id},
        )
        return {"successful": [], "failed": failed + aborted, "total": total, "components": []}

    db.session.commit()
    logger.info(
        "Bulk update applied: project=%s ok=%d failed=%d",
        project_id, len(successful), len(failed),
        extra={"project_id": project_id},
    )
    return {
        "successful": successful,
        "failed": failed,
        "total": total,
        "components": [c.to_dict() for c in touched.values()],
    }


# ── Statistics ───────────────────────────────────────────────────────────────


def milestone_stats(project_id: int, *, recent_limit: int = 20) -> dict:
    """Per milestone name: total, completed, average percentage; plus recent completions."""
    get_project(project_id)
    rows = db.session.execute(
        select(
            ComponentMilestone.milestone_name,
            func.count(ComponentMilestone.id),
            func.sum(case((ComponentMilestone.is_completed.is_(True), 1), else_=0)),
            func.avg(ComponentMilestone.percentage_complete),
        )
        .join(Component, ComponentMilestone.component_id == Component.id)
        .where(Component.project_id == project_id)
        .group_by(ComponentMilestone.milestone_name)
        .order_by(func.min(ComponentMilestone.milestone_order))
    ).all()

    stats = [
        {
            "milestone_name": name,
            "total": int(total or 0),
            "completed": int(completed or 0),
            "avg_percentage": round(float(avg), 1) if avg is not None else None,
        }
        for name, total, completed, avg in rows
    ]

    recent = db.session.execute(
        select(ComponentMilestone)
        .join(Component, ComponentMilestone.component_id == Component.id)
        .where(
            Component.project_id == project_id,
            ComponentMilestone.completed_at.is_not(None),
        )
        .order_by(ComponentMilestone.completed_at.desc())
        .limit(recent_limit)
    ).scalars()

    return {
        "milestone_stats": stats,
        "recent_updates": [
            {**m.to_dict(), "component_code": m.component.component_code, "type": m.component.type}
            for m in recent
        ],
    }


# ── Templates & components ───────────────────────────────────────────────────


def seed_default_templates(project_id: int) -> int:
    """Create the default milestone templates missing from a project. Returns count created."""
    get_project(project_id)
    existing = set(db.session.execute(
        select(MilestoneTemplate.name).where(MilestoneTemplate.project_id == project_id)
    ).scalars())

    created = 0
    for definition in DEFAULT_MILESTONE_TEMPLATES:
        problems = validate_template_definition(definition)
        if problems:
            raise ValidationError(problems[0], details={"problems": problems})
        if definition["name"] in existing:
            logger.debug("Template %r already exists for project %s", definition["name"], project_id)
            continue
        db.session.add(MilestoneTemplate(
            project_id=project_id,
            name=definition["name"],
            description=definition["description"],
            milestones=[dict(m) for m in definition["milestones"]],
            is_default=definition.get("is_default", False),
        ))
        created += 1
    db.session.flush()
    return created


def create_component_with_milestones(
    project_id: int,
    *,
    component_code: str,
    template_id: int,
    type: str = "OTHER",
    workflow_type: str = "MILESTONE_DISCRETE",
    drawing_id: int | None = None,
    quantity_total: float | None = None,
    unit: str | None = None,
    description: str = "",
) -> Component:
    """Create a component and instantiate its milestones from a template. Does not commit."""
    if workflow_type not in WORKFLOW_TYPES:
        raise ValidationError(f"Unknown workflow type: {workflow_type!r}")
    if workflow_type == "MILESTONE_QUANTITY" and not quantity_total:
        raise ValidationError("quantity_total is required for quantity workflows")

    template = db.session.execute(
        select(MilestoneTemplate).where(
            MilestoneTemplate.id == template_id,
            MilestoneTemplate.project_id == project_id,
        )
    ).scalar_one_or_none()
    if template is None:
        raise NotFoundError(resource="MilestoneTemplate", resource_id=template_id, project_id=project_id)
    if drawing_id is not None and db.session.get(Drawing, drawing_id) is None:
        raise NotFoundError(resource="Drawing", resource_id=drawing_id, project_id=project_id)

    component = Component(
        project_id=project_id,
        drawing_id=drawing_id,
        milestone_template_id=template.id,
        component_code=component_code,
        type=type,
        workflow_type=workflow_type,
        description=description,
    )
    for item in template.ordered_milestones:
        component.milestones.append(ComponentMilestone(
            milestone_name=item["name"],
            milestone_order=item["order"],
            weight=float(item.get("weight", 1)),
            quantity_total=quantity_total if workflow_type == "MILESTONE_QUANTITY" else None,
            unit=unit if workflow_type == "MILESTONE_QUANTITY" else None,
        ))
    db.session.add(component)
    db.session.flush()
    recalculate_component_completion(component)
    return component
