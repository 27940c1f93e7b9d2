from __future__ import annotations

import asyncio
import json
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from credchain import registry, services
from credchain.analysis import LLMClient
from credchain.config import EngineConfig, get_config
from credchain.db import get_session, init_db, session_scope
from credchain.errors import (
    EngineError, NotEligible, NotFound, TransitionError, UnknownValidator, UpstreamUnavailable,
    ValidationError,
)
from credchain.ledger import LedgerClient
from credchain.models import AIAnalysis, Application, Validator
from credchain.schemas import (
    AnalysisIn,
    AnalysisResultOut,
    AppealIn,
    ApplicationCreate,
    ApplicationDetail,
    ApplicationListResponse,
    IssuanceOut,
    NotificationOut,
    ResubmitRequest,
    StatsOut,
    SuspendIn,
    TallyOut,
    ValidatorIn,
    ValidatorOut,
    ValidatorStatsOut,
    VoteIn,
    VoteOut,
    VoteResultOut,
)
from credchain.voting import votes_for

log = logging.getLogger(__name__)


async def _sweep_loop(interval: float) -> None:
    """Periodically close voting windows that have run out."""
    while True:
        await asyncio.sleep(interval)
        try:
            with session_scope() as session:
                closed = await services.run_sweep(session, get_config())
            if closed:
                log.info("Sweep closed %d voting window(s)", len(closed))
        except Exception as exc:
            log.warning("Voting window sweep failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config = get_config()  # ConfigurationError here aborts startup
    task = None
    if config.sweep_interval_seconds > 0:
        task = asyncio.create_task(_sweep_loop(config.sweep_interval_seconds))
    yield
    if task is not None:
        task.cancel()


app = FastAPI(
    title="credchain",
    version="0.1.0",
    description=(
        "Consensus and lifecycle engine for educational credential verification. "
        "Applications are pre-screened by an analysis collaborator, reviewed by "
        "stake-weighted validators, and certified on approval. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Applications", "description": "Submit, browse, withdraw and resubmit credential applications."},
        {"name": "Analysis", "description": "AI pre-screen results and the gate that routes them."},
        {"name": "Voting", "description": "Validator votes, tallies and consensus outcomes."},
        {"name": "Validators", "description": "Validator registry and review statistics."},
        {"name": "Notifications", "description": "Applicant notifications."},
        {"name": "Stats", "description": "Aggregate statistics and breakdowns."},
        {"name": "Admin", "description": "Administrative overrides. Require X-Admin-Token when configured."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def engine_config() -> EngineConfig:
    return get_config()


def ledger_client() -> LedgerClient:
    return LedgerClient()


def llm_client() -> LLMClient:
    return LLMClient()


def require_admin(
    x_admin_token: str | None = Header(None),
    config: EngineConfig = Depends(engine_config),
) -> None:
    if config.admin_token and not secrets.compare_digest(x_admin_token or "", config.admin_token):
        raise HTTPException(401, "Admin token required")


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# Checked in order; the first matching class wins.
_ERROR_STATUS: list[tuple[type[EngineError], int]] = [
    (NotFound, 404),
    (UnknownValidator, 404),
    (NotEligible, 403),
    (ValidationError, 409),
    (TransitionError, 409),
    (UpstreamUnavailable, 503),
]


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


def _detail(session: Session, app_id: int, config: EngineConfig) -> dict:
    app_obj = _get_or_404(session, Application, app_id, "Application")
    session.refresh(app_obj)
    return services.application_detail(app_obj, config)


# ---------------------------------------------------------------------------
# Routes: Applications
# ---------------------------------------------------------------------------


@app.get("/api/applications", response_model=ApplicationListResponse,
         tags=["Applications"], summary="List applications with filtering and pagination")
async def list_applications(
    status: str | None = Query(None, description="Comma-separated: submitted, ai-checking, under-review, approved, rejected, flagged, withdrawn"),
    user_id: str | None = Query(None, description="Only applications submitted by this user"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    try:
        items, total = services.list_applications(
            session, status=status, user_id=user_id, page=page, per_page=per_page,
        )
    except ValueError as exc:
        raise HTTPException(400, f"Invalid status filter: {exc}") from exc
    return {"items": items, "total": total}


@app.post("/api/applications", response_model=ApplicationDetail, status_code=201,
          tags=["Applications"], summary="Submit a credential application and start its analysis")
async def create_application(
    body: ApplicationCreate,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
):
    payload = body.model_dump(exclude={"documents"})
    app_obj = services.create_application(session, payload, [d.model_dump() for d in body.documents], config)
    return services.application_detail(app_obj, config)


@app.get("/api/applications/{application_id}", response_model=ApplicationDetail,
         tags=["Applications"], summary="Get full application detail with analyses, votes and outcome records")
async def get_application(
    application_id: int,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
):
    return _detail(session, application_id, config)


@app.post("/api/applications/{application_id}/withdraw", response_model=ApplicationDetail,
          tags=["Applications"], summary="Withdraw a non-terminal application")
async def withdraw_application(
    application_id: int,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
):
    services.withdraw(session, application_id, config)
    return _detail(session, application_id, config)


@app.post("/api/applications/{application_id}/resubmit", response_model=ApplicationDetail, status_code=201,
          tags=["Applications"], summary="Resubmit a rejected application as a new application")
async def resubmit_application(
    application_id: int,
    body: ResubmitRequest,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
):
    documents = [d.model_dump() for d in body.documents] if body.documents is not None else None
    new_app = services.resubmit(
        session, application_id, config,
        changes=body.model_dump(exclude={"documents"}), documents=documents,
    )
    return services.application_detail(new_app, config)


@app.post("/api/applications/{application_id}/appeal", status_code=201,
          tags=["Applications"], summary="Appeal the latest rejection of an application")
async def appeal_application(application_id: int, body: AppealIn, session: Session = Depends(db_session)):
    appeal = services.file_appeal(session, application_id, body.reason)
    return {"id": appeal.id, "application_id": application_id,
            "rejection_record_id": appeal.rejection_record_id, "status": appeal.status}


# ---------------------------------------------------------------------------
# Routes: Analysis
# ---------------------------------------------------------------------------


def _analysis_result(session: Session, result: services.AnalysisOutcome) -> dict:
    app_obj = session.get(Application, result.analysis.application_id)
    rejection = result.transition.rejection if result.transition else None
    return {
        "application_id": app_obj.id,
        "status": app_obj.status.value,
        "prescreen_outcome": result.outcome.value,
        "analysis": services.analysis_dict(result.analysis),
        "rejection": services.rejection_dict(rejection) if rejection else None,
    }


@app.post("/api/applications/{application_id}/analysis", response_model=AnalysisResultOut,
          tags=["Analysis"], summary="Record an analysis result and run the pre-screen gate")
async def record_analysis(
    application_id: int,
    body: AnalysisIn,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
):
    analysis = AIAnalysis(
        eligibility_match_score=body.eligibility_match_score,
        document_authenticity_score=body.document_authenticity_score,
        confidence_level=body.confidence_level,
        forgery_indicators_json=json.dumps(body.forgery_indicators),
        missing_information_json=json.dumps(body.missing_information),
        ai_recommendation=body.ai_recommendation,
        analysis_details_json=json.dumps(body.analysis_details),
        model=body.model,
    )
    result = services.record_analysis(session, application_id, analysis, config)
    return _analysis_result(session, result)


@app.post("/api/applications/{application_id}/analyze", response_model=AnalysisResultOut,
          tags=["Analysis"], summary="Run the LLM analysis collaborator and the pre-screen gate")
async def analyze_application(
    application_id: int,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
    client: LLMClient = Depends(llm_client),
):
    result = await services.run_analysis(session, application_id, config, client)
    return _analysis_result(session, result)


# ---------------------------------------------------------------------------
# Routes: Voting
# ---------------------------------------------------------------------------


@app.get("/api/applications/{application_id}/tally", response_model=TallyOut,
         tags=["Voting"], summary="Current stake-weighted tally and consensus outcome")
async def get_tally(
    application_id: int,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
):
    _get_or_404(session, Application, application_id, "Application")
    return services.tally_dict(votes_for(session, application_id), config)


@app.get("/api/applications/{application_id}/votes", response_model=list[VoteOut],
         tags=["Voting"], summary="List votes cast on an application")
async def list_votes(application_id: int, session: Session = Depends(db_session)):
    app_obj = _get_or_404(session, Application, application_id, "Application")
    return [services.vote_dict(v) for v in app_obj.votes]


@app.post("/api/applications/{application_id}/votes", response_model=VoteResultOut, status_code=201,
          tags=["Voting"], summary="Cast a validator vote; finalizes the application when consensus is reached")
async def cast_vote(
    application_id: int,
    body: VoteIn,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
    ledger: LedgerClient = Depends(ledger_client),
):
    receipt = await services.cast_vote(
        session, application_id, body.validator_address, body.value, body.reasoning, config, ledger,
    )
    app_obj = session.get(Application, application_id)
    session.refresh(app_obj)
    rejection = receipt.transition.rejection if receipt.transition else None
    return {
        "vote": services.vote_dict(receipt.vote),
        "tally": receipt.tally.as_dict(),
        "outcome": receipt.outcome.value,
        "status": app_obj.status.value,
        "rejection": services.rejection_dict(rejection) if rejection else None,
        "certificate": services.issuance_dict(app_obj.certificate) if app_obj.certificate else None,
    }


# ---------------------------------------------------------------------------
# Routes: Validators
# ---------------------------------------------------------------------------


@app.get("/api/validators", response_model=list[ValidatorOut],
         tags=["Validators"], summary="List registered validators with their current weight")
async def list_validators(session: Session = Depends(db_session), config: EngineConfig = Depends(engine_config)):
    rows = session.execute(select(Validator).order_by(Validator.address)).scalars().all()
    return [services.validator_dict(v, config.weight_policy) for v in rows]


@app.get("/api/validators/{address}", response_model=ValidatorStatsOut,
         tags=["Validators"], summary="Validator detail with review statistics")
async def get_validator(address: str, session: Session = Depends(db_session), config: EngineConfig = Depends(engine_config)):
    return services.validator_stats(session, address, config)


@app.post("/api/validators", response_model=ValidatorOut, status_code=201, dependencies=[Depends(require_admin)],
          tags=["Validators", "Admin"], summary="Register a validator or update its stake")
async def register_validator(body: ValidatorIn, session: Session = Depends(db_session),
                             config: EngineConfig = Depends(engine_config)):
    try:
        validator = registry.register_validator(session, body.address, body.stake_amount, body.display_name)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.validator_dict(validator, config.weight_policy)


@app.post("/api/validators/{address}/suspend", response_model=ValidatorOut, dependencies=[Depends(require_admin)],
          tags=["Validators", "Admin"], summary="Suspend or reinstate a validator")
async def suspend_validator(address: str, body: SuspendIn, session: Session = Depends(db_session),
                            config: EngineConfig = Depends(engine_config)):
    validator = registry.set_suspended(session, address, body.suspended)
    session.commit()
    return services.validator_dict(validator, config.weight_policy)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/applications/{application_id}/unflag", response_model=ApplicationDetail,
          dependencies=[Depends(require_admin)],
          tags=["Admin"], summary="Reopen a flagged application for validator review")
async def unflag_application(
    application_id: int,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
):
    services.unflag(session, application_id, config)
    return _detail(session, application_id, config)


@app.post("/api/admin/expire", dependencies=[Depends(require_admin)],
          tags=["Admin"], summary="Close every voting window that has run out")
async def expire_windows(
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
    ledger: LedgerClient = Depends(ledger_client),
):
    results = await services.run_sweep(session, config, ledger)
    return {"closed": [{"application_id": r.application.id, "status": r.status.value} for r in results]}


@app.post("/api/applications/{application_id}/issuance/retry", response_model=IssuanceOut,
          dependencies=[Depends(require_admin)],
          tags=["Admin"], summary="Re-arm a failed certificate issuance and submit it again")
async def retry_issuance(
    application_id: int,
    session: Session = Depends(db_session),
    config: EngineConfig = Depends(engine_config),
    ledger: LedgerClient = Depends(ledger_client),
):
    return services.issuance_dict(await services.retry_issuance(session, application_id, config, ledger))


# ---------------------------------------------------------------------------
# Routes: Notifications
# ---------------------------------------------------------------------------


@app.get("/api/notifications", response_model=list[NotificationOut],
         tags=["Notifications"], summary="List notifications for a user")
async def list_notifications(
    user_id: str = Query(..., description="Recipient user id"),
    unread_only: bool = Query(False),
    session: Session = Depends(db_session),
):
    return services.list_notifications(session, user_id, unread_only)


@app.post("/api/notifications/{notification_id}/read", response_model=NotificationOut,
          tags=["Notifications"], summary="Mark a notification as read")
async def read_notification(notification_id: int, session: Session = Depends(db_session)):
    note = services.mark_notification_read(session, notification_id)
    session.commit()
    return services.notification_dict(note)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("credchain.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
