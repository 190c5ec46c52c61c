def _appeal_body(helpers, **reference):
    return {"appeal_explanation": helpers["appeal_text"], **reference}


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "database": "ok"}


def test_requests_need_actor_headers(client):
    resp = client.post("/api/reports", json={"target_post_id": 1, "reason_code": "spam"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "http_401"


def test_report_flow_over_http(client, helpers):
    member = helpers["headers"](11)
    moderator = helpers["headers"](800, "moderator")

    created = client.post("/api/reports", json={"target_thread_id": 4, "reason_code": "spam"}, headers=member)
    assert created.status_code == 201
    body = created.json()
    assert body["reporter_id"] == 11
    assert body["status"] == "pending"
    report_id = body["id"]

    assert client.get("/api/reports", headers=member).status_code == 403

    queue = client.get("/api/reports", params={"status": ["pending"]}, headers=moderator)
    assert queue.status_code == 200
    assert [item["id"] for item in queue.json()["items"]] == [report_id]

    skipped = client.patch(f"/api/reports/{report_id}", json={"status": "resolved"}, headers=moderator)
    assert skipped.status_code == 409
    assert skipped.json()["error"]["details"] == {"current_status": "pending", "attempted_status": "resolved"}

    reviewed = client.patch(f"/api/reports/{report_id}", json={"status": "under_review"}, headers=moderator)
    assert reviewed.status_code == 200

    missing_notes = client.patch(f"/api/reports/{report_id}", json={"status": "resolved"}, headers=moderator)
    assert missing_notes.status_code == 400
    assert missing_notes.json()["error"]["details"]["field"] == "resolution_notes"


def test_invalid_report_target_is_400(client, helpers):
    resp = client.post(
        "/api/reports",
        json={"target_thread_id": 1, "target_post_id": 2, "reason_code": "spam"},
        headers=helpers["headers"](11),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation"
    assert resp.json()["error"]["details"]["field"] == "target"


def test_case_close_locked_then_allowed(client, helpers):
    moderator = helpers["headers"](800, "moderator")
    admin = helpers["headers"](900, "administrator")

    report = client.post("/api/reports", json={"target_thread_id": 9, "reason_code": "threat"}, headers=helpers["headers"](1))
    case = client.post("/api/cases", json={"report_ids": [report.json()["id"]]}, headers=moderator)
    assert case.status_code == 201
    case_id = case.json()["id"]
    assert case.json()["report_ids"] == [report.json()["id"]]

    assert client.post("/api/legal-holds", json={"thread_id": 9, "hold_reason": "subpoena"}, headers=moderator).status_code == 403
    hold = client.post("/api/legal-holds", json={"thread_id": 9, "hold_reason": "subpoena"}, headers=admin)
    assert hold.status_code == 201
    hold_id = hold.json()["id"]

    check = client.get("/api/legal-holds/check", params={"thread_id": 9}, headers=moderator)
    assert check.json() == {"blocked": True, "hold_id": hold_id}

    locked = client.patch(f"/api/cases/{case_id}", json={"status": "closed", "rationale": "done"}, headers=moderator)
    assert locked.status_code == 423
    assert locked.json()["error"]["details"]["hold_id"] == hold_id

    assert client.post(f"/api/legal-holds/{hold_id}/deactivate", headers=admin).status_code == 200
    closed = client.patch(f"/api/cases/{case_id}", json={"status": "closed", "rationale": "done"}, headers=moderator)
    assert closed.status_code == 200
    assert closed.json()["status"] == "closed"
    assert closed.json()["legal_hold"] is False


def test_appeal_flow_over_http(client, helpers):
    member = helpers["headers"](501)
    moderator = helpers["headers"](800, "moderator")
    admin = helpers["headers"](900, "administrator")

    ban = client.post("/api/actions", json={"target_user_id": 501, "action_type": "ban"}, headers=moderator)
    assert ban.status_code == 201
    ban_id = ban.json()["id"]

    assert client.get(f"/api/actions/{ban_id}", headers=helpers["headers"](502)).status_code == 403
    assert client.get("/api/users/501/actions", headers=member).status_code == 200

    appeal = client.post("/api/appeals", json=_appeal_body(helpers, appealed_ban_id=ban_id), headers=member)
    assert appeal.status_code == 201
    appeal_id = appeal.json()["id"]

    duplicate = client.post("/api/appeals", json=_appeal_body(helpers, appealed_ban_id=ban_id), headers=member)
    assert duplicate.status_code == 409

    queue = client.get("/api/appeals/queue", headers=moderator)
    assert [a["id"] for a in queue.json()["items"]] == [appeal_id]
    assert [a["id"] for a in client.get("/api/me/appeals", headers=member).json()] == [appeal_id]

    review = client.post(f"/api/appeals/{appeal_id}/review", headers=moderator)
    assert review.json()["status"] == "under_review"

    forbidden = client.post(
        f"/api/appeals/{appeal_id}/decision",
        json={"decision": "reverse", "decision_reasoning": "ok"},
        headers=moderator,
    )
    assert forbidden.status_code == 403

    decided = client.post(
        f"/api/appeals/{appeal_id}/decision",
        json={"decision": "reverse", "decision_reasoning": "Context shows no violation"},
        headers=admin,
    )
    assert decided.status_code == 200
    assert decided.json()["status"] == "approved"
    assert decided.json()["corrective_action_id"] is not None

    again = client.post(
        f"/api/appeals/{appeal_id}/decision",
        json={"decision": "uphold", "decision_reasoning": "second look"},
        headers=admin,
    )
    assert again.status_code == 409


def test_audit_search_requires_staff(client, helpers):
    client.post("/api/reports", json={"target_post_id": 1, "reason_code": "spam"}, headers=helpers["headers"](1))

    assert client.get("/api/audit", headers=helpers["headers"](1)).status_code == 403
    resp = client.get("/api/audit", params={"action_type": "report.create"}, headers=helpers["headers"](900, "administrator"))
    assert resp.status_code == 200
    assert resp.json()["total"] == 1


def test_anonymous_report_over_http(client, helpers):
    created = client.post(
        "/api/reports",
        json={"target_post_id": 8, "reason_code": "trolling", "anonymous": True},
        headers=helpers["headers"](12),
    )
    assert created.status_code == 201
    assert created.json()["reporter_id"] is None


def test_run_serves_app_with_configured_address():
    import uvicorn

    from moderation_core import api

    calls = []
    original = uvicorn.run
    setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    try:
        api.run()
    finally:
        setattr(uvicorn, "run", original)

    assert calls == [(api.app, {"host": api.settings.api_host, "port": api.settings.api_port, "log_config": None})]
