from sqlalchemy import text

from moderation_core.database import SessionLocal
from moderation_core.repositories import APPEAL_LOCK_NAMESPACE, AppealRepository


def test_postgres_end_to_end_flow(helpers):
    client = helpers["client"]
    member = helpers["headers"](21)
    moderator = helpers["headers"](800, "moderator")
    admin = helpers["headers"](900, "administrator")

    report = client.post("/api/reports", json={"target_post_id": 3, "reason_code": "personal_attack"}, headers=helpers["headers"](22))
    assert report.status_code == 201

    case = client.post("/api/cases", json={"lead_report_id": report.json()["id"]}, headers=moderator)
    assert case.status_code == 201
    case_id = case.json()["id"]

    suspension = client.post(
        "/api/actions",
        json={"target_user_id": 21, "action_type": "suspension", "case_id": case_id},
        headers=moderator,
    )
    assert suspension.status_code == 201

    appeal = client.post(
        "/api/appeals",
        json={"appealed_suspension_id": suspension.json()["id"], "appeal_explanation": helpers["appeal_text"]},
        headers=member,
    )
    assert appeal.status_code == 201

    duplicate = client.post(
        "/api/appeals",
        json={"appealed_moderation_action_id": suspension.json()["id"], "appeal_explanation": helpers["appeal_text"]},
        headers=member,
    )
    assert duplicate.status_code == 409

    hold = client.post("/api/legal-holds", json={"user_id": 21, "hold_reason": "law_enforcement"}, headers=admin)
    assert hold.status_code == 201

    locked = client.post(f"/api/cases/{case_id}/close", json={"rationale": "Sanction applied"}, headers=moderator)
    assert locked.status_code == 423

    client.post(f"/api/legal-holds/{hold.json()['id']}/deactivate", headers=admin)
    closed = client.post(f"/api/cases/{case_id}/close", json={"rationale": "Sanction applied"}, headers=moderator)
    assert closed.status_code == 200
    assert closed.json()["close_rationale"] == "Sanction applied"


def test_member_appeal_lock_blocks_second_session(db_session):
    repo = AppealRepository(db_session)
    assert repo.lock_member(21) is True

    other = SessionLocal()
    try:
        params = {"namespace": APPEAL_LOCK_NAMESPACE, "member_id": 21}
        taken = other.execute(text("SELECT pg_try_advisory_xact_lock(:namespace, :member_id)"), params).scalar()
        assert taken is False
        other.rollback()

        db_session.rollback()
        taken = other.execute(text("SELECT pg_try_advisory_xact_lock(:namespace, :member_id)"), params).scalar()
        assert taken is True
    finally:
        other.rollback()
        other.close()
