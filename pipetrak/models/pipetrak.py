"""
PipeTrak Milestones
Component progress tracking domain models.

Models:
    - Project:            construction project scoping every other record
    - Drawing:            isometric drawing grouping components
    - MilestoneTemplate:  named, weighted milestone set for a class of components
    - Component:          physical piping item (spool, valve, field weld, …)
    - ComponentMilestone: one workflow step of a component, with completion fields
    - MilestoneAuditLog:  field-level change history for milestone updates

Architecture:
    Project ──1:N──▶ Drawing ──1:N──▶ Component
    Project ──1:N──▶ MilestoneTemplate ──1:N──▶ Component
    Component ──1:N──▶ ComponentMilestone  (ordered by milestone_order)
    ComponentMilestone ──1:N──▶ MilestoneAuditLog

Completion representation (by Component.workflow_type):
    MILESTONE_DISCRETE    is_completed
    MILESTONE_PERCENTAGE  percentage_complete 0–100
    MILESTONE_QUANTITY    quantity_complete of quantity_total (unit)
"""

from datetime import datetime, timezone

from pipetrak.models import db
from pipetrak.services.milestone_state import ComponentView, MilestoneView


# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_TYPES = {
    "MILESTONE_DISCRETE",
    "MILESTONE_PERCENTAGE",
    "MILESTONE_QUANTITY",
}

COMPONENT_STATUSES = {"NOT_STARTED", "IN_PROGRESS", "COMPLETED"}

COMPONENT_TYPES = {
    "SPOOL", "PIPE", "VALVE", "GASKET", "SUPPORT",
    "INSTRUMENT", "FIELD_WELD", "FITTING", "FLANGE", "OTHER",
}

# ROC-aligned default templates; weights of each set sum to 100
DEFAULT_MILESTONE_TEMPLATES = [
    {
        "name": "Full Milestone Set",
        "description": "For spools and piping by footage",
        "is_default": True,
        "milestones": [
            {"name": "Receive", "weight": 5, "order": 1},
            {"name": "Erect", "weight": 30, "order": 2},
            {"name": "Connect", "weight": 30, "order": 3},
            {"name": "Support", "weight": 15, "order": 4},
            {"name": "Punch", "weight": 5, "order": 5},
            {"name": "Test", "weight": 10, "order": 6},
            {"name": "Restore", "weight": 5, "order": 7},
        ],
    },
    {
        "name": "Reduced Milestone Set",
        "description": "For valves, gaskets, supports, instruments",
        "milestones": [
            {"name": "Receive", "weight": 10, "order": 1},
            {"name": "Install", "weight": 60, "order": 2},
            {"name": "Punch", "weight": 10, "order": 3},
            {"name": "Test", "weight": 15, "order": 4},
            {"name": "Restore", "weight": 5, "order": 5},
        ],
    },
    {
        "name": "Field Weld",
        "description": "For field welds",
        "milestones": [
            {"name": "Fit-up Ready", "weight": 10, "order": 1},
            {"name": "Weld", "weight": 60, "order": 2},
            {"name": "Punch", "weight": 10, "order": 3},
            {"name": "Test", "weight": 15, "order": 4},
            {"name": "Restore", "weight": 5, "order": 5},
        ],
    },
    {
        "name": "Insulation",
        "description": "For insulation work",
        "milestones": [
            {"name": "Insulate", "weight": 60, "order": 1},
            {"name": "Metal Out", "weight": 40, "order": 2},
        ],
    },
    {
        "name": "Paint",
        "description": "For paint/coating work",
        "milestones": [
            {"name": "Primer", "weight": 40, "order": 1},
            {"name": "Finish Coat", "weight": 60, "order": 2},
        ],
    },
]


def validate_template_definition(definition):
    """Return a list of problems with a template definition (empty when valid)."""
    problems = []
    milestones = definition.get("milestones") or []
    if not milestones:
        problems.append(f"Template {definition.get('name')!r} has no milestones")
        return problems
    total = sum(float(m.get("weight", 0)) for m in milestones)
    if abs(total - 100) > 0.01:
        problems.append(f"Template {definition.get('name')!r} weights sum to {total:g}%, not 100%")
    orders = [m.get("order") for m in milestones]
    if len(set(orders)) != len(orders):
        problems.append(f"Template {definition.get('name')!r} has duplicate milestone orders")
    return problems


def _iso(value):
    return value.isoformat() if value else None


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Project / Drawing
# ═════════════════════════════════════════════════════════════════════════════


class Project(db.Model):
    """Construction project. All component and template lookups are scoped to one."""

    __tablename__ = "pipetrak_projects"

    id = db.Column(db.Integer, primary_key=True)
    job_number = db.Column(db.String(50), nullable=False, unique=True)
    job_name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    drawings = db.relationship(
        "Drawing", backref="project", lazy="dynamic",
        cascade="all, delete-orphan", order_by="Drawing.number",
    )
    templates = db.relationship(
        "MilestoneTemplate", backref="project", lazy="dynamic",
        cascade="all, delete-orphan", order_by="MilestoneTemplate.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "job_number": self.job_number,
            "job_name": self.job_name,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.job_number}>"


class Drawing(db.Model):
    """Isometric drawing; components are listed and bulk-selected per drawing."""

    __tablename__ = "pipetrak_drawings"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("pipetrak_projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    number = db.Column(db.String(100), nullable=False)
    title = db.Column(db.String(255), default="")
    revision = db.Column(db.String(20), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("project_id", "number", name="uq_pipetrak_drawing_number"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "number": self.number,
            "title": self.title,
            "revision": self.revision,
        }

    def __repr__(self):
        return f"<Drawing {self.id}: {self.number}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. MilestoneTemplate
# ═════════════════════════════════════════════════════════════════════════════


class MilestoneTemplate(db.Model):
    """
    Named milestone set applicable to a class of components.
    ``milestones`` is a JSON list of ``{"name", "weight", "order"}``.
    Components are grouped by template for bulk updates.
    """

    __tablename__ = "pipetrak_milestone_templates"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("pipetrak_projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    milestones = db.Column(db.JSON, nullable=False, default=list)
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("project_id", "name", name="uq_pipetrak_template_name"),
    )

    @property
    def ordered_milestones(self):
        return sorted(self.milestones or [], key=lambda m: m.get("order", 0))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "milestones": self.ordered_milestones,
            "is_default": self.is_default,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<MilestoneTemplate {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Component
# ═════════════════════════════════════════════════════════════════════════════


class Component(db.Model):
    """
    Physical piping item tracked through its milestones.
    ``completion_percent`` and ``status`` are derived and recalculated by the
    persistence service after every milestone change.
    """

    __tablename__ = "pipetrak_components"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("pipetrak_projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    drawing_id = db.Column(
        db.Integer, db.ForeignKey("pipetrak_drawings.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    milestone_template_id = db.Column(
        db.Integer, db.ForeignKey("pipetrak_milestone_templates.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    component_code = db.Column(
        db.String(100), nullable=False,
        comment="Field identifier, e.g. spool tag or weld number",
    )
    type = db.Column(db.String(30), nullable=False, default="OTHER")
    workflow_type = db.Column(
        db.String(30), nullable=False, default="MILESTONE_DISCRETE",
        comment="MILESTONE_DISCRETE | MILESTONE_PERCENTAGE | MILESTONE_QUANTITY",
    )
    description = db.Column(db.Text, default="")
    size = db.Column(db.String(30), nullable=True)
    spec = db.Column(db.String(50), nullable=True)
    area = db.Column(db.String(50), nullable=True)
    system = db.Column(db.String(50), nullable=True)

    completion_percent = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="NOT_STARTED")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("project_id", "component_code", name="uq_pipetrak_component_code"),
        db.CheckConstraint(
            "workflow_type IN ('MILESTONE_DISCRETE','MILESTONE_PERCENTAGE','MILESTONE_QUANTITY')",
            name="ck_pipetrak_component_workflow_type",
        ),
        db.CheckConstraint(
            "status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED')",
            name="ck_pipetrak_component_status",
        ),
    )

    milestones = db.relationship(
        "ComponentMilestone", backref="component", lazy="selectin",
        cascade="all, delete-orphan", order_by="ComponentMilestone.milestone_order",
    )
    drawing = db.relationship("Drawing", foreign_keys=[drawing_id])
    template = db.relationship("MilestoneTemplate", foreign_keys=[milestone_template_id])

    def to_view(self):
        """Engine view of this row (completion re-derived from the milestones)."""
        return ComponentView.build(
            id=self.id,
            component_code=self.component_code,
            type=self.type,
            workflow_type=self.workflow_type,
            milestones=[m.to_view() for m in self.milestones],
            drawing_id=self.drawing_id,
            milestone_template_id=self.milestone_template_id,
            template_name=self.template.name if self.template else None,
            description=self.description,
        )

    def to_dict(self, include_milestones=True):
        result = {
            "id": self.id,
            "project_id": self.project_id,
            "drawing_id": self.drawing_id,
            "drawing_number": self.drawing.number if self.drawing else None,
            "milestone_template_id": self.milestone_template_id,
            "template_name": self.template.name if self.template else None,
            "component_code": self.component_code,
            "type": self.type,
            "workflow_type": self.workflow_type,
            "description": self.description,
            "size": self.size,
            "spec": self.spec,
            "area": self.area,
            "system": self.system,
            "completion_percent": self.completion_percent,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_milestones:
            result["milestones"] = [m.to_dict() for m in self.milestones]
        return result

    def __repr__(self):
        return f"<Component {self.id}: {self.component_code} [{self.workflow_type}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ComponentMilestone
# ═════════════════════════════════════════════════════════════════════════════


class ComponentMilestone(db.Model):
    """One milestone of a component. Name, order and weight come from the template."""

    __tablename__ = "pipetrak_component_milestones"

    id = db.Column(db.Integer, primary_key=True)
    component_id = db.Column(
        db.Integer, db.ForeignKey("pipetrak_components.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    milestone_name = db.Column(db.String(100), nullable=False)
    milestone_order = db.Column(db.Integer, nullable=False)
    weight = db.Column(db.Float, nullable=False, default=1.0)

    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    percentage_complete = db.Column(db.Float, nullable=True)
    quantity_complete = db.Column(db.Float, nullable=True)
    quantity_total = db.Column(db.Float, nullable=True)
    unit = db.Column(db.String(20), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(100), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("component_id", "milestone_order", name="uq_pipetrak_milestone_order"),
    )

    def to_view(self):
        return MilestoneView(
            id=self.id,
            component_id=self.component_id,
            name=self.milestone_name,
            order=self.milestone_order,
            weight=self.weight if self.weight is not None else 1.0,
            is_completed=bool(self.is_completed),
            percentage_complete=self.percentage_complete,
            quantity_complete=self.quantity_complete,
            quantity_total=self.quantity_total,
            unit=self.unit,
            completed_at=_iso(self.completed_at),
            completed_by=self.completed_by,
        )

    def to_dict(self):
        return self.to_view().to_dict()

    def __repr__(self):
        return f"<ComponentMilestone {self.id}: {self.milestone_name} #{self.milestone_order}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. MilestoneAuditLog
# ═════════════════════════════════════════════════════════════════════════════


class MilestoneAuditLog(db.Model):
    """One changed field of one milestone update."""

    __tablename__ = "pipetrak_milestone_audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    component_id = db.Column(db.Integer, nullable=False, index=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("pipetrak_component_milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    field_name = db.Column(db.String(50), nullable=False)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    changed_by = db.Column(db.String(100), nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "component_id": self.component_id,
            "milestone_id": self.milestone_id,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_by": self.changed_by,
            "changed_at": _iso(self.changed_at),
        }

    def __repr__(self):
        return f"<MilestoneAuditLog {self.id}: {self.field_name}>"
