"""
Milestone State Model.

Canonical in-memory representation of a component and its milestones, plus
the completion semantics of the three workflow types:

    MILESTONE_DISCRETE    binary complete / incomplete (``is_completed``)
    MILESTONE_PERCENTAGE  0–100 continuous (``percentage_complete``)
    MILESTONE_QUANTITY    completed-of-total units (``quantity_complete`` /
                          ``quantity_total``, unit-typed e.g. feet)

Views are frozen dataclasses. Updating a milestone produces a new
``ComponentView`` with its roll-up recomputed; nothing is mutated in place,
so the component store can hand out references freely.

Usage:
    from pipetrak.services.milestone_state import ComponentView, completion_fraction

    component = ComponentView.from_dict(payload)
    fraction = completion_fraction(component.milestones[0], component.workflow_type)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable

from pipetrak.core.exceptions import ValidationError


class WorkflowType(str, Enum):
    DISCRETE = "MILESTONE_DISCRETE"
    PERCENTAGE = "MILESTONE_PERCENTAGE"
    QUANTITY = "MILESTONE_QUANTITY"

    @classmethod
    def parse(cls, value: WorkflowType | str | None) -> WorkflowType:
        """Coerce a wire value into a WorkflowType.

        Raises:
            ValidationError: if the value is not one of the three types.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(
                f"Unknown workflow type: {value!r}",
                details={"workflow_type": value},
            ) from None


class ComponentStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


# Fields a persistence response may overwrite on a milestone
COMPLETION_FIELDS = (
    "is_completed",
    "percentage_complete",
    "quantity_complete",
    "completed_at",
    "completed_by",
)

# Wire aliases used by the data-fetching layer
_CAMEL_ALIASES = {
    "milestoneName": "name",
    "milestone_name": "name",
    "milestoneOrder": "order",
    "milestone_order": "order",
    "componentId": "component_id",
    "isCompleted": "is_completed",
    "percentageComplete": "percentage_complete",
    "percentageValue": "percentage_complete",
    "quantityComplete": "quantity_complete",
    "quantityValue": "quantity_complete",
    "quantityTotal": "quantity_total",
    "completedAt": "completed_at",
    "completedBy": "completed_by",
    "creditWeight": "weight",
}


def _normalise_keys(data: dict) -> dict:
    out = {}
    for key, value in data.items():
        out[_CAMEL_ALIASES.get(key, key)] = value
    return out


def _clamp(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


# ═════════════════════════════════════════════════════════════════════════════
# Milestone
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class MilestoneView:
    """One step of a component's workflow. Identity and order never change."""

    id: int | str
    component_id: int | str
    name: str
    order: int
    weight: float = 1.0
    is_completed: bool = False
    percentage_complete: float | None = None
    quantity_complete: float | None = None
    quantity_total: float | None = None
    unit: str | None = None
    completed_at: str | None = None
    completed_by: str | None = None

    @classmethod
    def from_dict(cls, data: dict, component_id: int | str | None = None) -> MilestoneView:
        d = _normalise_keys(data)
        weight = d.get("weight")
        return cls(
            id=d["id"],
            component_id=d.get("component_id", component_id),
            name=d.get("name") or "",
            order=int(d.get("order") or 0),
            weight=1.0 if weight is None else float(weight),
            is_completed=bool(d.get("is_completed", False)),
            percentage_complete=d.get("percentage_complete"),
            quantity_complete=d.get("quantity_complete"),
            quantity_total=d.get("quantity_total"),
            unit=d.get("unit"),
            completed_at=d.get("completed_at"),
            completed_by=d.get("completed_by"),
        )

    def with_completion(self, fields: dict) -> MilestoneView:
        """Return a copy with the completion fields present in *fields* replaced."""
        d = _normalise_keys(fields)
        changes = {k: d[k] for k in COMPLETION_FIELDS if k in d}
        if "is_completed" in changes:
            changes["is_completed"] = bool(changes["is_completed"])
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "component_id": self.component_id,
            "milestone_name": self.name,
            "milestone_order": self.order,
            "weight": self.weight,
            "is_completed": self.is_completed,
            "percentage_complete": self.percentage_complete,
            "quantity_complete": self.quantity_complete,
            "quantity_total": self.quantity_total,
            "unit": self.unit,
            "completed_at": self.completed_at,
            "completed_by": self.completed_by,
        }


def completion_fraction(milestone: MilestoneView, workflow_type: WorkflowType | str) -> float:
    """Return how complete *milestone* is, always within [0, 1].

    Out-of-range stored values are clamped (``percentage_complete=150`` → 1).
    """
    wf = WorkflowType.parse(workflow_type)
    if wf is WorkflowType.DISCRETE:
        return 1.0 if milestone.is_completed else 0.0
    if wf is WorkflowType.PERCENTAGE:
        return _clamp(float(milestone.percentage_complete or 0) / 100.0)
    total = float(milestone.quantity_total or 0)
    if total <= 0:
        return 0.0
    return _clamp(float(milestone.quantity_complete or 0) / total)


def is_milestone_complete(milestone: MilestoneView, workflow_type: WorkflowType | str) -> bool:
    wf = WorkflowType.parse(workflow_type)
    if wf is WorkflowType.DISCRETE:
        return bool(milestone.is_completed)
    return completion_fraction(milestone, wf) == 1.0


def compute_completion_percent(
    milestones: Iterable[MilestoneView],
    workflow_type: WorkflowType | str,
) -> int:
    """Weight-normalised completion of a component, rounded to an int 0–100.

    When every weight is zero the plain average of the fractions is used.
    """
    items = list(milestones)
    if not items:
        return 0
    fractions = [completion_fraction(m, workflow_type) for m in items]
    total_weight = sum(m.weight for m in items)
    if total_weight > 0:
        raw = sum(f * m.weight for f, m in zip(fractions, items)) / total_weight
    else:
        raw = sum(fractions) / len(fractions)
    # half-up
    percent = int(math.floor(raw * 100 + 0.5))
    return max(0, min(100, percent))


def compute_status(
    milestones: Iterable[MilestoneView],
    workflow_type: WorkflowType | str,
    completion_percent: int | None = None,
) -> ComponentStatus:
    items = list(milestones)
    if completion_percent is None:
        completion_percent = compute_completion_percent(items, workflow_type)
    if completion_percent >= 100:
        return ComponentStatus.COMPLETED
    touched = any(completion_fraction(m, workflow_type) > 0 for m in items)
    if completion_percent == 0 and not touched:
        return ComponentStatus.NOT_STARTED
    return ComponentStatus.IN_PROGRESS


def format_milestone_progress(milestone: MilestoneView, workflow_type: WorkflowType | str) -> str:
    """Short progress label for UI displays, e.g. ``"30/120 ft"`` or ``"45%"``."""
    wf = WorkflowType.parse(workflow_type)
    if wf is WorkflowType.DISCRETE:
        return "Complete" if milestone.is_completed else "Incomplete"
    if wf is WorkflowType.PERCENTAGE:
        return f"{round(completion_fraction(milestone, wf) * 100)}%"
    done = milestone.quantity_complete or 0
    total = milestone.quantity_total or 0
    unit = f" {milestone.unit}" if milestone.unit else ""
    return f"{done:g}/{total:g}{unit}"


# ═════════════════════════════════════════════════════════════════════════════
# Component
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ComponentView:
    """A physical piping item with its milestones and derived roll-up."""

    id: int | str
    component_code: str
    type: str
    workflow_type: WorkflowType
    milestones: tuple[MilestoneView, ...] = ()
    drawing_id: int | str | None = None
    milestone_template_id: int | str | None = None
    template_name: str | None = None
    description: str | None = None
    completion_percent: int = 0
    status: ComponentStatus = ComponentStatus.NOT_STARTED
    attributes: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def build(cls, **kwargs) -> ComponentView:
        """Construct a view and derive ``completion_percent``/``status``."""
        kwargs["workflow_type"] = WorkflowType.parse(kwargs.get("workflow_type"))
        kwargs["milestones"] = tuple(kwargs.get("milestones") or ())
        return cls(**kwargs).recomputed()

    @classmethod
    def from_dict(cls, data: dict) -> ComponentView:
        """Parse a ComponentWithMilestones payload (snake_case or camelCase)."""
        component_id = data["id"]
        raw_milestones = data.get("milestones") or []
        template = data.get("milestone_template") or data.get("milestoneTemplate") or {}
        return cls.build(
            id=component_id,
            component_code=data.get("component_code") or data.get("componentId") or str(component_id),
            type=data.get("type") or "Unknown",
            workflow_type=data.get("workflow_type") or data.get("workflowType"),
            milestones=[MilestoneView.from_dict(m, component_id) for m in raw_milestones],
            drawing_id=data.get("drawing_id", data.get("drawingId")),
            milestone_template_id=data.get("milestone_template_id", data.get("milestoneTemplateId")),
            template_name=data.get("template_name") or template.get("name"),
            description=data.get("description"),
        )

    @property
    def canonical_milestones(self) -> list[MilestoneView]:
        """Milestones sorted by their order field."""
        return sorted(self.milestones, key=lambda m: m.order)

    @property
    def milestone_names(self) -> list[str]:
        return [m.name for m in self.canonical_milestones]

    def get_milestone(self, milestone_id: int | str) -> MilestoneView | None:
        for m in self.milestones:
            if str(m.id) == str(milestone_id):
                return m
        return None

    def find_milestone_by_name(self, name: str) -> MilestoneView | None:
        for m in self.canonical_milestones:
            if m.name == name:
                return m
        return None

    def recomputed(self) -> ComponentView:
        percent = compute_completion_percent(self.milestones, self.workflow_type)
        status = compute_status(self.milestones, self.workflow_type, percent)
        return replace(self, completion_percent=percent, status=status)

    def with_milestone(self, updated: MilestoneView) -> ComponentView:
        """Copy-on-write: swap one milestone (matched by id) and re-derive the roll-up."""
        if self.get_milestone(updated.id) is None:
            raise ValidationError(
                f"Milestone {updated.id} does not belong to component {self.id}",
                details={"milestone_id": updated.id, "component_id": self.id},
            )
        milestones = tuple(
            updated if str(m.id) == str(updated.id) else m for m in self.milestones
        )
        return replace(self, milestones=milestones).recomputed()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "component_code": self.component_code,
            "type": self.type,
            "workflow_type": self.workflow_type.value,
            "drawing_id": self.drawing_id,
            "milestone_template_id": self.milestone_template_id,
            "template_name": self.template_name,
            "description": self.description,
            "completion_percent": self.completion_percent,
            "status": self.status.value,
            "milestones": [m.to_dict() for m in self.canonical_milestones],
        }
