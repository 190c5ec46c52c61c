from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import auth, models, schemas
from .clock import Clock, utcnow
from .config import settings
from .database import engine, get_db
from .errors import ErrorKind, ModerationError
from .logging_utils import RequestIdMiddleware, configure_logging, log_event, log_warning
from .service import ModerationService

configure_logging()


ERROR_STATUS = {
    ErrorKind.validation: status.HTTP_400_BAD_REQUEST,
    ErrorKind.not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.conflict: status.HTTP_409_CONFLICT,
    ErrorKind.forbidden: status.HTTP_403_FORBIDDEN,
    ErrorKind.locked: status.HTTP_423_LOCKED,
}


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    try:
        from alembic import command
        from alembic.config import Config
        base_dir = Path(__file__).resolve().parent.parent
        alembic_ini = base_dir / "alembic.ini"
        if not alembic_ini.exists():
            logging.warning("alembic.ini not found; skipping migrations")
            return
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(base_dir / "alembic"))
        command.upgrade(cfg, "head")
        logging.info("Migrations applied to head")
    except Exception:
        logging.exception("Failed to run migrations on startup")


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is required")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if settings.auto_run_migrations:
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)
    log_event("api_started", database=engine.dialect.name)
    yield


app = FastAPI(title="Moderation Core API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_clock() -> Clock:
    return utcnow


def get_service(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> ModerationService:
    return ModerationService(db, clock)


@app.exception_handler(ModerationError)
async def moderation_error_handler(request: Request, exc: ModerationError):
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    if status_code >= 409:
        log_warning("moderation_request_rejected", path=request.url.path, code=exc.code, details=exc.details)
    return JSONResponse(status_code=status_code, content={**exc.to_dict(), "detail": exc.message})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    code = f"http_{exc.status_code}"
    message = exc.detail if isinstance(exc.detail, str) else "Error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": code, "message": message}, "detail": message},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger("moderation_core").exception("unhandled_error path=%s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": "internal_error", "message": "An unexpected error occurred."}},
    )


def _case_response(moderation_case: models.ModerationCase) -> schemas.CaseResponse:
    response = schemas.CaseResponse.model_validate(moderation_case)
    response.report_ids = sorted(r.id for r in moderation_case.reports)
    return response


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "ok"}
    except Exception:
        raise HTTPException(status_code=503, detail="Database unavailable")


# Reports


@app.post("/api/reports", response_model=schemas.ReportResponse, status_code=status.HTTP_201_CREATED)
def submit_report(
    payload: schemas.NewReport,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    payload = payload.model_copy(update={"reporter_id": None if payload.anonymous else actor.id})
    return service.submit_report(payload)


@app.get("/api/reports", response_model=schemas.Page[schemas.ReportSummary])
def report_queue(
    status_filter: Optional[List[models.ReportStatus]] = Query(default=None, alias="status"),
    reason_code: Optional[List[models.ReasonCode]] = Query(default=None),
    severity: Optional[List[models.Severity]] = Query(default=None),
    assigned_moderator_id: Optional[int] = None,
    unassigned_only: bool = False,
    target_post_id: Optional[int] = None,
    target_thread_id: Optional[int] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    include_archived: bool = False,
    sort: schemas.ReportSort = "priority",
    page: int = 1,
    page_size: int = settings.default_page_size,
    service: ModerationService = Depends(get_service),
    _actor: schemas.Actor = Depends(auth.require_staff),
):
    filters = schemas.ReportFilter(
        status=status_filter,
        reason_code=reason_code,
        severity=severity,
        assigned_moderator_id=assigned_moderator_id,
        unassigned_only=unassigned_only,
        target_post_id=target_post_id,
        target_thread_id=target_thread_id,
        created_from=created_from,
        created_to=created_to,
        include_archived=include_archived,
    )
    return service.list_report_queue(filters, sort, schemas.PageRequest(page=page, page_size=page_size))


@app.get("/api/reports/{report_id}", response_model=schemas.ReportResponse)
def get_report(
    report_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    report = service.get_report(report_id)
    if not actor.is_staff and report.reporter_id != actor.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only view your own reports.")
    return report


@app.patch("/api/reports/{report_id}", response_model=schemas.ReportResponse)
def update_report(
    report_id: int,
    patch: schemas.ReportPatch,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    return service.update_report(report_id, patch, actor.id)


@app.delete("/api/reports/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
def archive_report(
    report_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    service.archive_report(report_id, actor.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Moderation cases


@app.post("/api/cases", response_model=schemas.CaseResponse, status_code=status.HTTP_201_CREATED)
def open_case(
    payload: schemas.NewCase,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    return _case_response(service.open_case(payload, actor.id))


@app.get("/api/cases", response_model=schemas.Page[schemas.CaseResponse])
def list_cases(
    status_filter: Optional[List[models.CaseStatus]] = Query(default=None, alias="status"),
    priority: Optional[List[models.CasePriority]] = Query(default=None),
    assigned_moderator_id: Optional[int] = None,
    legal_hold: Optional[bool] = None,
    include_archived: bool = False,
    page: int = 1,
    page_size: int = settings.default_page_size,
    service: ModerationService = Depends(get_service),
    _actor: schemas.Actor = Depends(auth.require_staff),
):
    filters = schemas.CaseFilter(
        status=status_filter,
        priority=priority,
        assigned_moderator_id=assigned_moderator_id,
        legal_hold=legal_hold,
        include_archived=include_archived,
    )
    result = service.list_cases(filters, schemas.PageRequest(page=page, page_size=page_size))
    return schemas.Page[schemas.CaseResponse](
        items=[_case_response(c) for c in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@app.get("/api/cases/{case_id}", response_model=schemas.CaseResponse)
def get_case(
    case_id: int,
    service: ModerationService = Depends(get_service),
    _actor: schemas.Actor = Depends(auth.require_staff),
):
    return _case_response(service.get_case(case_id))


@app.patch("/api/cases/{case_id}", response_model=schemas.CaseResponse)
def update_case(
    case_id: int,
    patch: schemas.CasePatch,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    return _case_response(service.update_case(case_id, patch, actor.id))


@app.post("/api/cases/{case_id}/close", response_model=schemas.CaseResponse)
def close_case(
    case_id: int,
    payload: schemas.CloseCaseRequest,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    return _case_response(service.close_case(case_id, payload.rationale, actor.id))


@app.post("/api/cases/{case_id}/reports", response_model=schemas.CaseResponse)
def link_reports(
    case_id: int,
    payload: schemas.LinkReportsRequest,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    return _case_response(service.link_reports(case_id, payload.report_ids, actor.id))


@app.delete("/api/cases/{case_id}", status_code=status.HTTP_204_NO_CONTENT)
def archive_case(
    case_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_admin),
):
    service.archive_case(case_id, actor.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Moderation actions


@app.post("/api/actions", response_model=schemas.ModerationActionResponse, status_code=status.HTTP_201_CREATED)
def record_action(
    payload: schemas.NewModerationAction,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    return service.record_action(payload, actor.id)


@app.get("/api/actions/{action_id}", response_model=schemas.ModerationActionResponse)
def get_action(
    action_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.get_action(action_id, actor)


@app.get("/api/users/{user_id}/actions", response_model=List[schemas.ModerationActionResponse])
def list_actions_for_user(
    user_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.list_actions_for_user(user_id, actor)


# Appeals


@app.post("/api/appeals", response_model=schemas.AppealResponse, status_code=status.HTTP_201_CREATED)
def submit_appeal(
    payload: schemas.NewAppeal,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.submit_appeal(actor.id, payload)


@app.get("/api/appeals/queue", response_model=schemas.Page[schemas.AppealResponse])
def appeal_queue(
    status_filter: Optional[List[models.AppealStatus]] = Query(default=None, alias="status"),
    member_id: Optional[int] = None,
    include_archived: bool = False,
    page: int = 1,
    page_size: int = settings.default_page_size,
    service: ModerationService = Depends(get_service),
    _actor: schemas.Actor = Depends(auth.require_staff),
):
    filters = schemas.AppealFilter(status=status_filter, member_id=member_id, include_archived=include_archived)
    result = service.list_appeal_queue(filters, schemas.PageRequest(page=page, page_size=page_size))
    return schemas.Page[schemas.AppealResponse](
        items=[schemas.AppealResponse.model_validate(a) for a in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@app.get("/api/me/appeals", response_model=List[schemas.AppealResponse])
def my_appeals(
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.list_appeals_for_member(actor.id)


@app.get("/api/appeals/{appeal_id}", response_model=schemas.AppealResponse)
def get_appeal(
    appeal_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.get_appeal(appeal_id, actor)


@app.patch("/api/appeals/{appeal_id}", response_model=schemas.AppealResponse)
def update_appeal(
    appeal_id: int,
    patch: schemas.AppealPatch,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.update_appeal(appeal_id, actor.id, patch)


@app.delete("/api/appeals/{appeal_id}", status_code=status.HTTP_204_NO_CONTENT)
def withdraw_appeal(
    appeal_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    service.withdraw_appeal(appeal_id, actor.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/appeals/{appeal_id}/review", response_model=schemas.AppealResponse)
def begin_appeal_review(
    appeal_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_staff),
):
    return service.begin_review(appeal_id, actor)


@app.post("/api/appeals/{appeal_id}/decision", response_model=schemas.AppealResponse)
def decide_appeal(
    appeal_id: int,
    payload: schemas.AppealDecisionRequest,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.decide_appeal(appeal_id, actor, payload)


@app.put("/api/appeals/{appeal_id}/priority", response_model=schemas.AppealResponse)
def set_appeal_priority(
    appeal_id: int,
    payload: schemas.PriorityOverrideRequest,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.get_current_actor),
):
    return service.set_appeal_priority(appeal_id, actor, payload.priority_override)


# Legal holds


@app.post("/api/legal-holds", response_model=schemas.LegalHoldResponse, status_code=status.HTTP_201_CREATED)
def create_legal_hold(
    payload: schemas.NewLegalHold,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_admin),
):
    return service.create_legal_hold(payload, actor.id)


@app.get("/api/legal-holds", response_model=List[schemas.LegalHoldResponse])
def list_legal_holds(
    active_only: bool = True,
    service: ModerationService = Depends(get_service),
    _actor: schemas.Actor = Depends(auth.require_admin),
):
    return service.list_legal_holds(active_only=active_only)


@app.get("/api/legal-holds/check", response_model=schemas.BlockedResponse)
def check_legal_hold(
    user_id: Optional[int] = None,
    post_id: Optional[int] = None,
    thread_id: Optional[int] = None,
    moderation_case_id: Optional[int] = None,
    service: ModerationService = Depends(get_service),
    _actor: schemas.Actor = Depends(auth.require_staff),
):
    hold = service.find_blocking_hold(
        schemas.TargetRef(user_id=user_id, post_id=post_id, thread_id=thread_id, moderation_case_id=moderation_case_id)
    )
    return schemas.BlockedResponse(blocked=hold is not None, hold_id=hold.id if hold else None)


@app.post("/api/legal-holds/{hold_id}/deactivate", response_model=schemas.LegalHoldResponse)
def deactivate_legal_hold(
    hold_id: int,
    service: ModerationService = Depends(get_service),
    actor: schemas.Actor = Depends(auth.require_admin),
):
    return service.deactivate_legal_hold(hold_id, actor.id)


# Audit trail


@app.get("/api/audit", response_model=schemas.Page[schemas.AuditEntryResponse])
def search_audit(
    actor_id: Optional[int] = None,
    action_type: Optional[str] = None,
    target_type: Optional[str] = None,
    target_identifier: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    page: int = 1,
    page_size: int = settings.default_page_size,
    service: ModerationService = Depends(get_service),
    viewer: schemas.Actor = Depends(auth.require_staff),
):
    filters = schemas.AuditFilter(
        actor_id=actor_id,
        action_type=action_type,
        target_type=target_type,
        target_identifier=target_identifier,
        created_from=created_from,
        created_to=created_to,
    )
    return service.search_audit(filters, viewer, schemas.PageRequest(page=page, page_size=page_size))


def run() -> None:
    import uvicorn  # noqa: PLC0415

    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
