"""PipeTrak - projects, drawings, milestone templates, components, milestones, audit

Revision ID: a1p2t3r4k501
Revises:
Create Date: 2026-10-19 09:00:00.000000

Changes:
  - Create pipetrak_projects, pipetrak_drawings
  - Create pipetrak_milestone_templates (JSON milestone definitions)
  - Create pipetrak_components with derived completion_percent / status
  - Create pipetrak_component_milestones (unique order per component)
  - Create pipetrak_milestone_audit_logs
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1p2t3r4k501"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "pipetrak_projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_number", sa.String(50), nullable=False, unique=True),
        sa.Column("job_name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "pipetrak_drawings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(),
                  sa.ForeignKey("pipetrak_projects.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("number", sa.String(100), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("revision", sa.String(20), nullable=True),
        sa.UniqueConstraint("project_id", "number", name="uq_pipetrak_drawing_number"),
    )

    op.create_table(
        "pipetrak_milestone_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(),
                  sa.ForeignKey("pipetrak_projects.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("milestones", sa.JSON(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("project_id", "name", name="uq_pipetrak_template_name"),
    )

    op.create_table(
        "pipetrak_components",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(),
                  sa.ForeignKey("pipetrak_projects.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("drawing_id", sa.Integer(),
                  sa.ForeignKey("pipetrak_drawings.id", ondelete="SET NULL"),
                  nullable=True, index=True),
        sa.Column("milestone_template_id", sa.Integer(),
                  sa.ForeignKey("pipetrak_milestone_templates.id", ondelete="SET NULL"),
                  nullable=True, index=True),
        sa.Column("component_code", sa.String(100), nullable=False,
                  comment="Field identifier, e.g. spool tag or weld number"),
        sa.Column("type", sa.String(30), nullable=False, server_default="OTHER"),
        sa.Column("workflow_type", sa.String(30), nullable=False,
                  server_default="MILESTONE_DISCRETE"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("size", sa.String(30), nullable=True),
        sa.Column("spec", sa.String(50), nullable=True),
        sa.Column("area", sa.String(50), nullable=True),
        sa.Column("system", sa.String(50), nullable=True),
        sa.Column("completion_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="NOT_STARTED"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("project_id", "component_code", name="uq_pipetrak_component_code"),
        sa.CheckConstraint(
            "workflow_type IN ('MILESTONE_DISCRETE','MILESTONE_PERCENTAGE','MILESTONE_QUANTITY')",
            name="ck_pipetrak_component_workflow_type",
        ),
        sa.CheckConstraint(
            "status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED')",
            name="ck_pipetrak_component_status",
        ),
    )

    op.create_table(
        "pipetrak_component_milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("component_id", sa.Integer(),
                  sa.ForeignKey("pipetrak_components.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("milestone_name", sa.String(100), nullable=False),
        sa.Column("milestone_order", sa.Integer(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False, server_default="1"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("percentage_complete", sa.Float(), nullable=True),
        sa.Column("quantity_complete", sa.Float(), nullable=True),
        sa.Column("quantity_total", sa.Float(), nullable=True),
        sa.Column("unit", sa.String(20), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(100), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("component_id", "milestone_order", name="uq_pipetrak_milestone_order"),
    )

    op.create_table(
        "pipetrak_milestone_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=False, index=True),
        sa.Column("component_id", sa.Integer(), nullable=False, index=True),
        sa.Column("milestone_id", sa.Integer(),
                  sa.ForeignKey("pipetrak_component_milestones.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("field_name", sa.String(50), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("changed_by", sa.String(100), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade():
    op.drop_table("pipetrak_milestone_audit_logs")
    op.drop_table("pipetrak_component_milestones")
    op.drop_table("pipetrak_components")
    op.drop_table("pipetrak_milestone_templates")
    op.drop_table("pipetrak_drawings")
    op.drop_table("pipetrak_projects")
