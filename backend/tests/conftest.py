import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("LOG_JSON", "false")

from moderation_core import api as api_module  # noqa: E402
from moderation_core import models, schemas  # noqa: E402
from moderation_core.api import app  # noqa: E402
from moderation_core.database import Base, SessionLocal, engine, get_db  # noqa: E402
from moderation_core.service import ModerationService  # noqa: E402


APPEAL_TEXT = (
    "I believe this action was a mistake. The post in question quoted another member in order to "
    "criticise the argument, not the person, and I was not aware of the rule."
)


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def clock():
    return FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture()
def service(db_session, clock):
    return ModerationService(db_session, clock)


@pytest.fixture()
def client(db_session, clock):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[api_module.get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def admin():
    return schemas.Actor(id=900, role="administrator")


@pytest.fixture()
def moderator():
    return schemas.Actor(id=800, role="moderator")


@pytest.fixture()
def helpers(service, db_session, clock, admin):
    def report(*, post_id=None, thread_id=None, reason_code="spam", severity=None, reporter_id=1, text=None):
        return service.submit_report(
            schemas.NewReport(
                reporter_id=reporter_id,
                target_post_id=post_id,
                target_thread_id=thread_id,
                reason_code=reason_code,
                severity=severity,
                reporter_text=text,
            )
        )

    def action(user_id: int, action_type: str = "warning", **fields):
        return service.record_action(
            schemas.NewModerationAction(target_user_id=user_id, action_type=action_type, **fields),
            actor_id=admin.id,
        )

    def appeal(member_id: int, **reference):
        return service.submit_appeal(member_id, schemas.NewAppeal(appeal_explanation=APPEAL_TEXT, **reference))

    def hold(**target):
        return service.create_legal_hold(schemas.NewLegalHold(hold_reason="litigation", **target), actor_id=admin.id)

    def headers(actor_id: int, role: str = "member") -> dict:
        return {"X-Actor-Id": str(actor_id), "X-Actor-Role": role}

    def audit_entries(action_type: str | None = None):
        query = db_session.query(models.AuditLogEntry)
        if action_type:
            query = query.filter(models.AuditLogEntry.action_type == action_type)
        return query.order_by(models.AuditLogEntry.id.asc()).all()

    return {
        "service": service,
        "db": db_session,
        "clock": clock,
        "report": report,
        "action": action,
        "appeal": appeal,
        "hold": hold,
        "headers": headers,
        "audit_entries": audit_entries,
        "appeal_text": APPEAL_TEXT,
    }
