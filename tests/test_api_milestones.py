"""API tests for the milestone blueprint (/api/v1/pipetrak)."""

import pytest

from pipetrak.models.pipetrak import MilestoneAuditLog

BASE = "/api/v1/pipetrak/projects"


def _milestone_id(component, name):
    return next(m.id for m in component.milestones if m.milestone_name == name)


@pytest.fixture()
def spool(make_component):
    return make_component("SP-001")


# ── Health ───────────────────────────────────────────────────────────────


def test_health(client):
    assert client.get("/api/v1/health").get_json()["status"] == "ok"
    assert client.get("/api/v1/health/ready").status_code == 200


def test_health_live_counts_tables(client, spool):
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    data = res.get_json()
    assert data["status"] == "healthy"
    assert data["checks"]["tables"]["pipetrak_components"] == 1


# ── Components ───────────────────────────────────────────────────────────


class TestComponents:
    def test_list(self, client, project, spool):
        res = client.get(f"{BASE}/{project.id}/components")
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 1
        item = data["items"][0]
        assert item["component_code"] == "SP-001"
        assert item["template_name"] == "Full Milestone Set"
        assert [m["milestone_name"] for m in item["milestones"]][:2] == ["Receive", "Erect"]

    def test_list_unknown_project(self, client):
        res = client.get(f"{BASE}/999/components")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_get_one(self, client, project, spool):
        res = client.get(f"{BASE}/{project.id}/components/{spool.id}")
        assert res.status_code == 200
        assert res.get_json()["id"] == spool.id

    def test_milestone_states(self, client, project, spool):
        res = client.get(f"{BASE}/{project.id}/components/{spool.id}/milestone-states")
        assert res.status_code == 200
        states = {s["milestone_name"]: s for s in res.get_json()["states"]}
        assert states["Receive"]["state"] == "available"
        assert states["Receive"]["reason"] is None
        assert states["Connect"]["state"] == "dependent"
        assert states["Connect"]["reason"] == "Connect requires Receive to be complete"

    def test_templates(self, client, project):
        res = client.get(f"{BASE}/{project.id}/milestone-templates")
        assert res.status_code == 200
        assert len(res.get_json()["items"]) == 5


# ── Single update ────────────────────────────────────────────────────────


class TestPatchMilestone:
    def _url(self, project, spool, name):
        return f"{BASE}/{project.id}/components/{spool.id}/milestones/{_milestone_id(spool, name)}"

    def test_complete(self, client, project, spool):
        res = client.patch(
            self._url(project, spool, "Receive"),
            json={"value": True},
            headers={"X-PipeTrak-User": "foreman1"},
        )
        assert res.status_code == 200
        data = res.get_json()
        assert data["milestone"]["is_completed"] is True
        assert data["milestone"]["completed_by"] == "foreman1"
        assert data["component"]["completion_percent"] == 5
        assert MilestoneAuditLog.query.filter_by(changed_by="foreman1").count() == 3

    def test_missing_value(self, client, project, spool):
        res = client.patch(self._url(project, spool, "Receive"), json={})
        assert res.status_code == 400
        assert res.get_json()["error"] == "value or complete is required"

    def test_invalid_value(self, client, project, spool):
        res = client.patch(self._url(project, spool, "Receive"), json={"value": "done"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_fractional_percentage_rejected(self, client, project, make_component):
        component = make_component("SP-009", workflow_type="MILESTONE_PERCENTAGE")
        res = client.patch(self._url(project, component, "Receive"), json={"value": 50.5})
        assert res.status_code == 400
        assert res.get_json()["error"] == "Percentage must be a whole number"

    def test_sequence_blocked_is_409(self, client, project, spool):
        res = client.patch(self._url(project, spool, "Connect"), json={"value": True})
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "SEQUENCE_BLOCKED"
        assert body["error"] == "Connect requires Receive to be complete"

    def test_unknown_milestone(self, client, project, spool):
        res = client.patch(f"{BASE}/{project.id}/components/{spool.id}/milestones/99999", json={"value": True})
        assert res.status_code == 404

    def test_non_json_body_rejected(self, client, project, spool):
        res = client.patch(self._url(project, spool, "Receive"), data="value=true", content_type="text/plain")
        assert res.status_code == 415


# ── Bulk update ──────────────────────────────────────────────────────────


class TestBulkUpdate:
    def _url(self, project):
        return f"{BASE}/{project.id}/milestones/bulk-update"

    def test_partial_success(self, client, project, make_component):
        ids = [make_component(f"SP-00{i}").id for i in (1, 2)]
        res = client.post(self._url(project), json={
            "component_ids": ids + [4242],
            "updates": [{"milestone_name": "Receive", "complete": True}],
        })
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 3
        assert len(data["successful"]) == 2
        assert data["failed"][0]["error"] == "Component not found"
        assert len(data["components"]) == 2

    def test_validate_only_option(self, client, project, spool):
        res = client.post(self._url(project), json={
            "component_ids": [spool.id],
            "updates": [{"milestone_name": "Receive", "complete": True}],
            "options": {"validate_only": True},
        })
        assert res.status_code == 200
        assert len(res.get_json()["successful"]) == 1
        listing = client.get(f"{BASE}/{project.id}/components").get_json()
        assert listing["items"][0]["milestones"][0]["is_completed"] is False

    @pytest.mark.parametrize("body, message", [
        ({"updates": [{"milestone_name": "Receive", "complete": True}]}, "component_ids is required"),
        ({"component_ids": [1]}, "updates is required"),
        ({"component_ids": [1], "updates": [{"complete": True}]}, "updates[0].milestone_name is required"),
        ({"component_ids": [1], "updates": [{"milestone_name": "Receive"}]}, "updates[0] needs complete or value"),
    ])
    def test_body_validation(self, client, project, body, message):
        res = client.post(self._url(project), json=body)
        assert res.status_code == 400
        assert res.get_json()["error"] == message

    def test_too_many_components(self, client, project):
        res = client.post(self._url(project), json={
            "component_ids": list(range(1, 1002)),
            "updates": [{"milestone_name": "Receive", "complete": True}],
        })
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"


def test_stats(client, project, spool):
    client.patch(
        f"{BASE}/{project.id}/components/{spool.id}/milestones/{_milestone_id(spool, 'Receive')}",
        json={"value": True},
    )
    res = client.get(f"{BASE}/{project.id}/milestones/stats")
    assert res.status_code == 200
    data = res.get_json()
    assert data["milestone_stats"][0]["completed"] == 1
    assert data["recent_updates"][0]["component_code"] == "SP-001"
