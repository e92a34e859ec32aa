"""Service-layer tests for pipetrak.services.milestone_persistence_service.

Runs against the SQLite test database; every test gets fresh tables from the
autouse ``session`` fixture and a project with the default templates.
"""

import pytest
from sqlalchemy import select

import pipetrak.services.milestone_persistence_service as mps
from pipetrak.core.exceptions import NotFoundError, SequenceBlockedError, ValidationError
from pipetrak.models import db
from pipetrak.models.pipetrak import (
    ComponentMilestone,
    MilestoneAuditLog,
    MilestoneTemplate,
    Project,
)


def _milestone(component, name):
    return next(m for m in component.milestones if m.milestone_name == name)


def _reload(milestone_id):
    db.session.expire_all()
    return db.session.get(ComponentMilestone, milestone_id)


# ── Templates & components ───────────────────────────────────────────────


class TestTemplates:
    def test_defaults_seeded(self, templates):
        assert set(templates) == {
            "Full Milestone Set", "Reduced Milestone Set", "Field Weld", "Insulation", "Paint",
        }
        assert templates["Full Milestone Set"].is_default is True

    def test_seeding_is_idempotent(self, project):
        assert mps.seed_default_templates(project.id) == 0
        assert MilestoneTemplate.query.filter_by(project_id=project.id).count() == 5

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            mps.seed_default_templates(999)


class TestCreateComponent:
    def test_milestones_follow_template_order_and_weights(self, make_component):
        component = make_component("SP-001")
        assert [m.milestone_name for m in component.milestones] == [
            "Receive", "Erect", "Connect", "Support", "Punch", "Test", "Restore",
        ]
        assert sum(m.weight for m in component.milestones) == 100
        assert component.status == "NOT_STARTED"
        assert component.completion_percent == 0

    def test_quantity_needs_total(self, make_component):
        with pytest.raises(ValidationError, match="quantity_total"):
            make_component("INS-001", template="Insulation", workflow_type="MILESTONE_QUANTITY")

    def test_template_of_other_project_not_found(self, project, templates):
        other = Project(job_number="J-2002", job_name="Other")
        db.session.add(other)
        db.session.flush()
        with pytest.raises(NotFoundError):
            mps.create_component_with_milestones(
                other.id, component_code="X-1", template_id=templates["Paint"].id,
            )

    def test_list_filters_by_template(self, project, templates, make_component):
        make_component("SP-002")
        make_component("SP-001")
        make_component("V-001", template="Reduced Milestone Set", type="VALVE")

        codes = [c.component_code for c in mps.list_project_components(project.id)]
        assert codes == ["SP-001", "SP-002", "V-001"]

        valves = mps.list_project_components(project.id, template_id=templates["Reduced Milestone Set"].id)
        assert [c.component_code for c in valves] == ["V-001"]


# ── Single update ────────────────────────────────────────────────────────


class TestUpdateComponentMilestone:
    def test_discrete_complete_stamps_and_audits(self, project, make_component):
        component = make_component("SP-001")
        receive = _milestone(component, "Receive")

        milestone, updated = mps.update_component_milestone(
            project.id, component.id, receive.id, {"value": True}, actor="jdoe",
        )

        assert milestone.is_completed is True
        assert milestone.completed_by == "jdoe"
        assert milestone.completed_at is not None
        assert updated.completion_percent == 5
        assert updated.status == "IN_PROGRESS"

        fields = {a.field_name for a in MilestoneAuditLog.query.filter_by(milestone_id=receive.id)}
        assert fields == {"is_completed", "completed_at", "completed_by"}

    def test_uncomplete_clears_stamps(self, project, make_component):
        component = make_component("SP-001")
        receive = _milestone(component, "Receive")
        mps.update_component_milestone(project.id, component.id, receive.id, {"value": True}, actor="jdoe")

        milestone, updated = mps.update_component_milestone(
            project.id, component.id, receive.id, {"complete": False}, actor="jdoe",
        )

        assert milestone.is_completed is False
        assert milestone.completed_at is None
        assert milestone.completed_by is None
        assert updated.status == "NOT_STARTED"

    def test_sequence_blocked(self, project, make_component):
        component = make_component("SP-001")
        connect = _milestone(component, "Connect")

        with pytest.raises(SequenceBlockedError, match="requires Receive"):
            mps.update_component_milestone(project.id, component.id, connect.id, {"value": True})

        assert _reload(connect.id).is_completed is False
        assert MilestoneAuditLog.query.count() == 0

    def test_sequence_not_enforced_when_disabled(self, project, make_component):
        component = make_component("SP-001")
        connect = _milestone(component, "Connect")
        milestone, _ = mps.update_component_milestone(
            project.id, component.id, connect.id, {"value": True}, enforce_sequence=False,
        )
        assert milestone.is_completed is True

    def test_percentage_workflow(self, project, make_component):
        component = make_component("SP-001", workflow_type="MILESTONE_PERCENTAGE")
        receive = _milestone(component, "Receive")

        milestone, updated = mps.update_component_milestone(project.id, component.id, receive.id, {"value": 40})
        assert milestone.percentage_complete == 40
        assert milestone.is_completed is False
        assert updated.completion_percent == 2

        with pytest.raises(ValidationError, match="between 0 and 100"):
            mps.update_component_milestone(project.id, component.id, receive.id, {"value": 150})

    def test_percentage_must_be_whole(self, project, make_component):
        component = make_component("SP-001", workflow_type="MILESTONE_PERCENTAGE")
        receive = _milestone(component, "Receive")

        with pytest.raises(ValidationError, match="whole number"):
            mps.update_component_milestone(project.id, component.id, receive.id, {"value": 50.5})
        assert _reload(receive.id).percentage_complete is None

        milestone, _ = mps.update_component_milestone(project.id, component.id, receive.id, {"value": 50.0})
        assert milestone.percentage_complete == 50

    def test_quantity_workflow(self, project, make_component):
        component = make_component(
            "INS-001", template="Insulation", workflow_type="MILESTONE_QUANTITY",
            quantity_total=120, unit="ft",
        )
        insulate = _milestone(component, "Insulate")

        milestone, updated = mps.update_component_milestone(project.id, component.id, insulate.id, {"value": 30})
        assert milestone.quantity_complete == 30
        assert updated.completion_percent == 15

        milestone, updated = mps.update_component_milestone(
            project.id, component.id, insulate.id, {"complete": True},
        )
        assert milestone.quantity_complete == 120
        assert milestone.is_completed is True
        assert updated.completion_percent == 60

    def test_discrete_rejects_numbers(self, project, make_component):
        component = make_component("SP-001")
        receive = _milestone(component, "Receive")
        with pytest.raises(ValidationError, match=mps.ERR_INVALID_UPDATE):
            mps.update_component_milestone(project.id, component.id, receive.id, {"value": 1})

    def test_component_of_other_project_is_not_found(self, project, make_component):
        component = make_component("SP-001")
        other = Project(job_number="J-2002", job_name="Other")
        db.session.add(other)
        db.session.commit()
        with pytest.raises(NotFoundError):
            mps.update_component_milestone(
                other.id, component.id, component.milestones[0].id, {"value": True},
            )

    def test_milestone_of_other_component_is_not_found(self, project, make_component):
        first = make_component("SP-001")
        second = make_component("SP-002")
        with pytest.raises(NotFoundError):
            mps.update_component_milestone(
                project.id, first.id, second.milestones[0].id, {"value": True},
            )


# ── Bulk update ──────────────────────────────────────────────────────────


class TestBulkUpdate:
    def test_best_effort_with_missing_component(self, project, make_component):
        ids = [make_component(f"SP-00{i}").id for i in (1, 2, 3)]

        result = mps.bulk_update_milestones(
            project.id, ids + [9999], [{"milestone_name": "Receive", "complete": True}], actor="bulk",
        )

        assert result["total"] == 4
        assert [i["component_id"] for i in result["successful"]] == ids
        assert result["failed"] == [
            {"component_id": 9999, "milestone_name": "Receive", "error": mps.ERR_COMPONENT_NOT_FOUND},
        ]
        assert len(result["components"]) == 3
        assert all(c["completion_percent"] == 5 for c in result["components"])

    def test_missing_milestone_name(self, project, make_component):
        valve = make_component("V-001", template="Reduced Milestone Set", type="VALVE")
        result = mps.bulk_update_milestones(
            project.id, [valve.id], [{"milestone_name": "Erect", "complete": True}],
        )
        assert result["successful"] == []
        assert result["failed"][0]["error"] == mps.ERR_MILESTONE_NOT_FOUND
        assert result["failed"][0]["component_code"] == "V-001"

    def test_duplicate_ids_counted_once(self, project, make_component):
        cid = make_component("SP-001").id
        result = mps.bulk_update_milestones(
            project.id, [cid, cid, str(cid)],
            [{"milestone_name": "Receive", "complete": True}, {"milestone_name": "Erect", "complete": True}],
        )
        assert result["total"] == 2
        assert len(result["successful"]) == 2

    def test_bulk_does_not_apply_sequencing(self, project, make_component):
        component = make_component("SP-001")
        result = mps.bulk_update_milestones(
            project.id, [component.id], [{"milestone_name": "Connect", "complete": True}],
        )
        assert len(result["successful"]) == 1

    def test_one_bad_item_does_not_undo_others(self, project, make_component):
        spool = make_component("SP-001", workflow_type="MILESTONE_PERCENTAGE")
        other = make_component("SP-002", workflow_type="MILESTONE_PERCENTAGE")

        result = mps.bulk_update_milestones(
            project.id, [spool.id, other.id],
            [{"milestone_name": "Receive", "value": 100}, {"milestone_name": "Erect", "value": 180}],
        )

        assert len(result["successful"]) == 2
        assert {f["error"] for f in result["failed"]} == {"Percentage must be between 0 and 100"}
        assert _reload(_milestone(spool, "Receive").id).percentage_complete == 100
        assert _reload(_milestone(spool, "Erect").id).percentage_complete is None

    def test_atomic_rolls_back_everything(self, project, make_component):
        first = make_component("SP-001")
        receive_id = _milestone(first, "Receive").id

        result = mps.bulk_update_milestones(
            project.id, [first.id, 9999], [{"milestone_name": "Receive", "complete": True}], atomic=True,
        )

        assert result["successful"] == []
        errors = sorted(f["error"] for f in result["failed"])
        assert errors == [mps.ERR_COMPONENT_NOT_FOUND, mps.ERR_ATOMIC_ABORTED]
        assert _reload(receive_id).is_completed is False
        assert MilestoneAuditLog.query.count() == 0

    def test_validate_only_writes_nothing(self, project, make_component):
        component = make_component("SP-001")
        receive_id = _milestone(component, "Receive").id

        result = mps.bulk_update_milestones(
            project.id, [component.id], [{"milestone_name": "Receive", "complete": True}], validate_only=True,
        )

        assert len(result["successful"]) == 1
        assert result["components"] == []
        assert _reload(receive_id).is_completed is False

    def test_empty_updates_rejected(self, project):
        with pytest.raises(ValidationError):
            mps.bulk_update_milestones(project.id, [1], [])


# ── Statistics ───────────────────────────────────────────────────────────


def test_milestone_stats(project, make_component):
    ids = [make_component(f"SP-00{i}").id for i in (1, 2, 3)]
    mps.bulk_update_milestones(project.id, ids[:2], [{"milestone_name": "Receive", "complete": True}], actor="x")

    stats = mps.milestone_stats(project.id)

    receive = stats["milestone_stats"][0]
    assert receive == {"milestone_name": "Receive", "total": 3, "completed": 2, "avg_percentage": None}
    assert [s["milestone_name"] for s in stats["milestone_stats"]][:3] == ["Receive", "Erect", "Connect"]
    assert len(stats["recent_updates"]) == 2
    assert stats["recent_updates"][0]["type"] == "SPOOL"


def test_recalculate_component_completion(project, make_component):
    component = make_component("SP-001")
    for m in component.milestones:
        m.is_completed = True
    mps.recalculate_component_completion(component)
    assert component.completion_percent == 100
    assert component.status == "COMPLETED"
    db.session.rollback()
    assert db.session.execute(select(ComponentMilestone).where(ComponentMilestone.is_completed.is_(True))).first() is None
