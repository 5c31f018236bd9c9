"""
HTTP API tests.

Test blocks:
  1. Health and request guards
  2. Workflow template endpoints
  3. Matter workflow endpoints
  4. Task endpoints
  5. Error envelopes
"""

from conftest import three_stage_template
from matterflow.models.exception import TaskException


def _h(user):
    return {"X-User-Id": str(user.id)}


def _activate(client, matter, template):
    res = client.post(f"/api/v1/matters/{matter.id}/workflow", json={"template_id": template.id})
    assert res.status_code == 201, res.get_json()
    return res.get_json()


# ── 1. Health and guards ─────────────────────────────────────────────────────


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["status"] == "ok"
    assert res.headers.get("X-Request-ID")


def test_non_json_post_rejected(client, make_matter):
    matter = make_matter()
    res = client.post(f"/api/v1/matters/{matter.id}/workflow", data="template_id=1",
                      content_type="text/plain")
    assert res.status_code == 415


def test_unknown_route(client):
    assert client.get("/api/v1/nowhere").status_code == 404


# ── 2. Templates ─────────────────────────────────────────────────────────────


def test_template_authoring_flow(client):
    res = client.post("/api/v1/workflow-templates", json={
        "key": "employment-tribunal",
        "version": "1.0.0",
        "name": "Employment Tribunal Claim",
        "practice_area": "employment",
        "stages": [{"name": "Early conciliation", "gate_type": "hard",
                    "task_templates": [{"title": "Notify ACAS", "is_mandatory": True}]}],
    })
    assert res.status_code == 201
    tpl = res.get_json()
    assert tpl["released_at"] is None

    res = client.post(f"/api/v1/workflow-templates/{tpl['id']}/stages", json={"name": "ET1 claim"})
    assert res.status_code == 201
    assert res.get_json()["sort_order"] == 2

    res = client.post(f"/api/v1/workflow-templates/{tpl['id']}/release")
    assert res.status_code == 200
    assert res.get_json()["released_at"] is not None

    res = client.patch(f"/api/v1/workflow-templates/{tpl['id']}", json={"name": "Renamed"})
    assert res.status_code == 409
    assert res.get_json()["code"] == "TEMPLATE_IMMUTABLE"

    res = client.patch(f"/api/v1/workflow-templates/{tpl['id']}", json={"is_active": False})
    assert res.status_code == 200
    assert res.get_json()["is_active"] is False

    res = client.post(f"/api/v1/workflow-templates/{tpl['id']}/versions", json={"version": "1.1.0"})
    assert res.status_code == 201
    assert res.get_json()["version"] == "1.1.0"

    versions = client.get("/api/v1/workflow-templates/employment-tribunal/versions").get_json()
    assert [v["version"] for v in versions["items"]] == ["1.1.0", "1.0.0"]


def test_template_create_missing_fields(client):
    res = client.post("/api/v1/workflow-templates", json={"key": "x"})
    assert res.status_code == 400
    assert set(res.get_json()["details"]["missing"]) == {"version", "name", "practice_area"}


def test_list_applicable_requires_practice_area(client):
    assert client.get("/api/v1/workflow-templates").status_code == 400


def test_list_applicable_uses_matter_attributes(client, make_matter, make_template):
    make_template(three_stage_template(), key="cash-only", selection_conditions={"funding_source": "cash"})
    make_template(three_stage_template(), key="general")
    matter = make_matter(attributes={"funding_source": "mortgage"})

    res = client.get(f"/api/v1/workflow-templates?practice_area=conveyancing&matter_id={matter.id}")
    assert res.status_code == 200
    assert [t["key"] for t in res.get_json()["items"]] == ["general"]


def test_get_template_with_stages(client, make_template):
    make_template(three_stage_template())
    res = client.get("/api/v1/workflow-templates/test-workflow")
    assert res.status_code == 200
    body = res.get_json()
    assert [s["name"] for s in body["stages"]] == ["A Onboarding", "B Lender", "C Exchange"]
    assert len(body["stages"][0]["task_templates"]) == 3


# ── 3. Matter workflows ──────────────────────────────────────────────────────


def test_activate_and_read_workflow(client, make_matter, make_template, supervisor):
    matter = make_matter(attributes={"has_mortgage": False})
    tpl = make_template(three_stage_template())

    res = client.post(f"/api/v1/matters/{matter.id}/workflow", json={"template_id": tpl.id},
                      headers=_h(supervisor))
    assert res.status_code == 201
    body = res.get_json()
    assert [s["status"] for s in body["stages"]] == ["in_progress", "skipped", "pending"]
    assert body["activated_by_id"] == supervisor.id
    assert body["progress"]["total_mandatory_tasks"] == 2

    again = client.post(f"/api/v1/matters/{matter.id}/workflow", json={"template_id": tpl.id})
    assert again.status_code == 409
    assert again.get_json()["code"] == "DUPLICATE_WORKFLOW"

    got = client.get(f"/api/v1/matters/{matter.id}/workflow")
    assert got.status_code == 200
    assert got.get_json()["id"] == body["id"]


def test_activate_default_template_with_empty_body(client, make_matter, make_template):
    matter = make_matter()
    tpl = make_template(three_stage_template(), is_default=True)
    res = client.post(f"/api/v1/matters/{matter.id}/workflow", json={})
    assert res.status_code == 201
    assert res.get_json()["workflow_template_id"] == tpl.id


def test_workflow_missing(client, make_matter):
    matter = make_matter()
    res = client.get(f"/api/v1/matters/{matter.id}/workflow")
    assert res.status_code == 404


def test_stage_detail_and_tasks(client, make_matter, make_template):
    matter = make_matter()
    body = _activate(client, matter, make_template(three_stage_template()))
    stage_id = body["stages"][0]["id"]

    res = client.get(f"/api/v1/matters/{matter.id}/stages/{stage_id}")
    assert res.status_code == 200
    detail = res.get_json()
    assert detail["gate"]["requires_exception"] is True
    assert detail["completion"]["mandatory_tasks"] == 2
    assert len(detail["tasks"]) == 3

    res = client.get(f"/api/v1/stages/{stage_id}/tasks?status=pending&limit=2")
    assert res.status_code == 200
    listing = res.get_json()
    assert listing["total"] == 3
    assert len(listing["items"]) == 2


def test_advance_hard_gate(client, make_matter, make_template, paralegal, supervisor):
    matter = make_matter()
    body = _activate(client, matter, make_template(three_stage_template()))
    stage_id = body["stages"][0]["id"]
    url = f"/api/v1/matters/{matter.id}/stages/{stage_id}/advance"

    res = client.post(url, json={}, headers=_h(paralegal))
    assert res.status_code == 409
    err = res.get_json()
    assert err["code"] == "GATE_BLOCKED"
    assert len(err["details"]["pending_task_ids"]) == 2

    res = client.post(url, json={"exception": {"reason": "Urgent"}}, headers=_h(paralegal))
    assert res.status_code == 422
    assert res.get_json()["code"] == "INVALID_EXCEPTION"

    res = client.post(url, json={"exception": {"reason": "Partner approved", "approved_by_id": supervisor.id}},
                      headers=_h(paralegal))
    assert res.status_code == 200
    out = res.get_json()
    assert out["stage"]["status"] == "completed"
    assert out["stage"]["exception"]["exception_type"] == "gate_override"
    assert out["workflow"]["current_stage_id"] == body["stages"][1]["id"]

    res = client.get(f"/api/v1/exceptions?matter_id={matter.id}&object_type=stage")
    assert res.get_json()["total"] == 1


def test_reconcile_endpoint(client, make_matter, make_template):
    matter = make_matter()
    _activate(client, matter, make_template(three_stage_template()))
    res = client.post(f"/api/v1/matters/{matter.id}/workflow/reconcile")
    assert res.status_code == 200
    assert res.get_json()["matched"] is True


def test_exceptions_object_id_needs_type(client):
    res = client.get("/api/v1/exceptions?object_id=3")
    assert res.status_code == 400


# ── 4. Tasks ─────────────────────────────────────────────────────────────────


def test_task_status_endpoint(client, make_matter, make_template, paralegal, supervisor):
    matter = make_matter()
    body = _activate(client, matter, make_template(three_stage_template()))
    task_id = client.get(f"/api/v1/stages/{body['stages'][0]['id']}/tasks").get_json()["items"][0]["id"]

    res = client.patch(f"/api/v1/tasks/{task_id}/status", json={"status": "skipped"}, headers=_h(paralegal))
    assert res.status_code == 422
    assert res.get_json()["code"] == "INVALID_EXCEPTION"

    res = client.patch(
        f"/api/v1/tasks/{task_id}/status",
        json={"status": "skipped", "reason": "Known client", "approved_by_id": supervisor.id},
        headers=_h(paralegal),
    )
    assert res.status_code == 200
    assert res.get_json()["status"] == "skipped"
    assert res.get_json()["is_resolved"] is True
    assert TaskException.query.count() == 1

    res = client.patch(f"/api/v1/tasks/{task_id}/status", json={"status": "in_progress"})
    assert res.status_code == 422
    assert res.get_json()["code"] == "INVALID_TRANSITION"


def test_evidence_and_completion_endpoints(client, make_matter, make_template, paralegal, supervisor):
    matter = make_matter()
    tpl = make_template([{
        "name": "AML",
        "task_templates": [{"title": "Verify identity", "is_mandatory": True,
                            "requires_verified_evidence": True}],
    }])
    body = _activate(client, matter, tpl)
    task_id = client.get(f"/api/v1/stages/{body['stages'][0]['id']}/tasks").get_json()["items"][0]["id"]

    detail = client.get(f"/api/v1/tasks/{task_id}").get_json()
    assert detail["completion_blockers"] == ["evidence", "verified_evidence"]

    res = client.patch(f"/api/v1/tasks/{task_id}/status", json={"status": "completed"})
    assert res.status_code == 409
    assert res.get_json()["code"] == "GATE_UNSATISFIED"
    assert res.get_json()["details"]["missing"] == ["evidence", "verified_evidence"]

    res = client.post(f"/api/v1/tasks/{task_id}/evidence", json={"evidence_type": "id_document"},
                      headers=_h(paralegal))
    assert res.status_code == 201
    evidence_id = res.get_json()["id"]

    res = client.post(f"/api/v1/tasks/{task_id}/evidence/{evidence_id}/verify", json={})
    assert res.status_code == 400

    res = client.post(f"/api/v1/tasks/{task_id}/evidence/{evidence_id}/verify",
                      json={"method": "electronic_check"}, headers=_h(supervisor))
    assert res.status_code == 200
    assert res.get_json()["verified_by_id"] == supervisor.id

    listing = client.get(f"/api/v1/tasks/{task_id}/evidence").get_json()
    assert listing["total"] == 1

    res = client.patch(f"/api/v1/tasks/{task_id}/status", json={"status": "completed"})
    assert res.status_code == 200
    wf = client.get(f"/api/v1/matters/{matter.id}/workflow").get_json()
    assert wf["completed_at"] is not None
    assert wf["progress"]["progress_percent"] == 100


def test_approval_endpoints(client, make_matter, make_template, paralegal, supervisor):
    matter = make_matter()
    tpl = make_template([{
        "name": "Sign-off",
        "task_templates": [{"title": "Approve", "is_mandatory": True, "requires_approval": True}],
    }])
    body = _activate(client, matter, tpl)
    task_id = client.get(f"/api/v1/stages/{body['stages'][0]['id']}/tasks").get_json()["items"][0]["id"]

    res = client.post(f"/api/v1/tasks/{task_id}/approval", json={}, headers=_h(paralegal))
    assert res.get_json()["approval_status"] == "pending"

    res = client.post(f"/api/v1/tasks/{task_id}/approval/decision", json={"decision": "approved"},
                      headers=_h(paralegal))
    assert res.status_code == 422

    res = client.post(f"/api/v1/tasks/{task_id}/approval/decision",
                      json={"decision": "approved", "comment": "Fine"}, headers=_h(supervisor))
    assert res.status_code == 200
    assert res.get_json()["approval_status"] == "approved"


def test_manual_task_endpoint(client, make_matter, paralegal):
    matter = make_matter()
    res = client.post("/api/v1/tasks", json={"matter_id": matter.id, "title": "Chase lender",
                                             "due_date": "2026-05-01", "priority": "urgent"},
                      headers=_h(paralegal))
    assert res.status_code == 201
    task = res.get_json()
    assert task["source"] == "manual"
    assert task["due_date"].startswith("2026-05-01")

    res = client.post("/api/v1/tasks", json={"matter_id": matter.id, "title": "Bad date", "due_date": "soon"})
    assert res.status_code == 400


# ── 5. Error envelopes ───────────────────────────────────────────────────────


def test_bad_actor_header(client, make_matter):
    matter = make_matter()
    res = client.post(f"/api/v1/matters/{matter.id}/workflow", json={}, headers={"X-User-Id": "abc"})
    assert res.status_code == 422
    assert "X-User-Id" in res.get_json()["error"]


def test_missing_task_returns_404(client):
    res = client.get("/api/v1/tasks/4040")
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_non_string_version_is_rejected(client):
    res = client.post("/api/v1/workflow-templates", json={
        "key": "probate", "version": 1, "name": "Probate", "practice_area": "probate",
    })
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"


def test_non_string_reason_is_rejected(client, make_matter, make_template, supervisor):
    matter = make_matter()
    body = _activate(client, matter, make_template(three_stage_template()))
    stage_id = body["stages"][0]["id"]
    task_id = client.get(f"/api/v1/stages/{stage_id}/tasks").get_json()["items"][0]["id"]

    res = client.patch(f"/api/v1/tasks/{task_id}/status",
                       json={"status": "skipped", "reason": ["x"]}, headers=_h(supervisor))
    assert res.status_code == 422
    assert res.get_json()["code"] == "INVALID_EXCEPTION"

    res = client.post(f"/api/v1/matters/{matter.id}/stages/{stage_id}/advance",
                      json={"exception": {"reason": 5, "approved_by_id": supervisor.id}},
                      headers=_h(supervisor))
    assert res.status_code == 422
    assert res.get_json()["code"] == "INVALID_EXCEPTION"
    assert TaskException.query.count() == 0


def test_non_string_text_fields_are_400(client, make_matter, make_template, supervisor):
    matter = make_matter()
    res = client.post(f"/api/v1/matters/{matter.id}/workflow", json={"template_key": 42})
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    body = _activate(client, matter, make_template(three_stage_template()))
    task_id = client.get(f"/api/v1/stages/{body['stages'][0]['id']}/tasks").get_json()["items"][0]["id"]

    res = client.patch(f"/api/v1/tasks/{task_id}/status", json={"status": 3}, headers=_h(supervisor))
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    res = client.post(f"/api/v1/tasks/{task_id}/evidence", json={"evidence_type": {"kind": "id"}})
    assert res.status_code == 400

    res = client.post(f"/api/v1/tasks/{task_id}/approval/decision", json={"decision": True},
                      headers=_h(supervisor))
    assert res.status_code == 400

    res = client.post("/api/v1/tasks", json={"matter_id": matter.id, "title": ["Chase"]})
    assert res.status_code == 400


def test_manual_task_with_unknown_approver_role(client, make_matter):
    matter = make_matter()
    res = client.post("/api/v1/tasks", json={"matter_id": matter.id, "title": "Partner sign-off",
                                             "requires_approval": True, "required_approver_role": "partner"})
    assert res.status_code == 422
    assert res.get_json()["details"]["required_approver_role"] == "invalid value 'partner'"
