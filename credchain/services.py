"""Shared business logic for the credchain API and MCP server.

Operations that move an application through its lifecycle take the
per-application lock, commit, and only then write best-effort
notifications. Administrative helpers that do not transition anything leave
the commit to the caller.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credchain import consensus, gate, issuance, lifecycle, notifier, registry, voting
from credchain.analysis import AnalysisCallError, LLMClient, analyze_application
from credchain.config import EngineConfig
from credchain.errors import (
    AlreadyTerminal, AppealNotAllowed, InvalidTransition, NotFound, ResubmissionNotAllowed,
    TransitionError, UpstreamUnavailable,
)
from credchain.ledger import LedgerClient
from credchain.lifecycle import LifecycleEvent, TransitionResult
from credchain.models import (
    AIAnalysis, Appeal, Application, ApplicationStatus, CertificateIssuance, Document,
    Notification, PAYLOAD_FIELDS, RejectionRecord, StatusTransition, TERMINAL_STATUSES,
    Validator, Vote, VoteValue,
)
from credchain.rejection import RejectionTrigger
from credchain.utils import as_utc, isoformat, json_parse, utcnow
from credchain.voting import VoteReceipt, application_lock

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

SUMMARY_FIELDS = (
    "id", "user_id", "title", "institution", "applicant_name", "supersedes_id", "review_round",
)

DETAIL_FIELDS = (
    "description", "applicant_email", "applicant_address", "student_id", "gpa",
)

DOCUMENT_FIELDS = ("filename", "document_type", "file_type", "file_size", "content_hash", "extracted_text")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _get_or_error(session: Session, model, entity_id: int, label: str):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFound(label, entity_id)
    return obj


def latest_rejection(app: Application) -> RejectionRecord | None:
    return max(app.rejections, key=lambda r: r.id, default=None)


def application_summary(app: Application) -> dict:
    return {
        **{f: getattr(app, f) for f in SUMMARY_FIELDS},
        "status": app.status.value,
        "created_at": isoformat(app.created_at),
        "submitted_at": isoformat(app.submitted_at),
        "updated_at": isoformat(app.updated_at),
        "review_opened_at": isoformat(app.review_opened_at),
    }


def analysis_dict(a: AIAnalysis) -> dict:
    return {
        "id": a.id, "attempt": a.attempt,
        "eligibility_match_score": a.eligibility_match_score,
        "document_authenticity_score": a.document_authenticity_score,
        "confidence_level": a.confidence_level,
        "forgery_indicators": json_parse(a.forgery_indicators_json, []),
        "missing_information": json_parse(a.missing_information_json, []),
        "ai_recommendation": a.ai_recommendation,
        "analysis_details": json_parse(a.analysis_details_json),
        "prescreen_outcome": a.prescreen_outcome,
        "model": a.model,
        "processed_at": isoformat(a.processed_at),
    }


def vote_dict(v: Vote) -> dict:
    return {
        "id": v.id, "application_id": v.application_id, "review_round": v.review_round,
        "validator_address": v.validator_address, "value": v.value.value,
        "weight": v.weight, "stake_snapshot": v.stake_snapshot,
        "reasoning": v.reasoning, "digest": v.digest,
        "cast_at": isoformat(v.cast_at),
    }


def rejection_dict(r: RejectionRecord) -> dict:
    return {
        "id": r.id, "application_id": r.application_id, "transition_id": r.transition_id,
        "rejection_reason": r.rejection_reason.value,
        "detailed_analysis": r.detailed_analysis,
        "evidence": json_parse(r.evidence_json),
        "trigger": r.trigger,
        "can_resubmit": r.can_resubmit, "can_appeal": r.can_appeal,
        "created_at": isoformat(r.created_at),
    }


def issuance_dict(c: CertificateIssuance) -> dict:
    return {
        "id": c.id, "application_id": c.application_id,
        "status": c.status.value, "attempts": c.attempts, "last_error": c.last_error,
        "certificate_data": json_parse(c.certificate_data_json),
        "token_address": c.token_address, "token_id": c.token_id,
        "tx_hash": c.tx_hash, "metadata_uri": c.metadata_uri,
        "requested_at": isoformat(c.requested_at), "issued_at": isoformat(c.issued_at),
    }


def transition_dict(t: StatusTransition) -> dict:
    return {
        "id": t.id, "event": t.event,
        "from_status": t.from_status.value, "to_status": t.to_status.value,
        "source_id": t.source_id, "actor": t.actor,
        "created_at": isoformat(t.created_at),
    }


def tally_dict(votes: list[Vote], config: EngineConfig) -> dict:
    return {
        **consensus.tally(votes).as_dict(),
        "outcome": consensus.evaluate(votes, config).value,
        "quorum_threshold": config.quorum_threshold,
        "approval_weight_threshold": config.approval_weight_threshold,
        "flag_weight_threshold": config.flag_weight_threshold,
    }


def voting_deadline(app: Application, config: EngineConfig) -> datetime | None:
    opened = as_utc(app.review_opened_at)
    return opened + config.max_voting_window if opened else None


def application_detail(app: Application, config: EngineConfig) -> dict:
    base = application_summary(app)
    base.update({f: getattr(app, f) for f in DETAIL_FIELDS})
    base["graduation_date"] = app.graduation_date.isoformat() if app.graduation_date else None
    base["documents"] = [{"id": d.id, **{f: getattr(d, f) for f in DOCUMENT_FIELDS}} for d in app.documents]
    base["analyses"] = [analysis_dict(a) for a in app.analyses]
    base["votes"] = [vote_dict(v) for v in app.votes]
    base["tally"] = tally_dict([v for v in app.votes if v.review_round == app.review_round], config)
    base["voting_deadline"] = isoformat(voting_deadline(app, config))
    base["rejections"] = [rejection_dict(r) for r in app.rejections]
    base["certificate"] = issuance_dict(app.certificate) if app.certificate else None
    base["transitions"] = [transition_dict(t) for t in app.transitions]
    base["allowed_events"] = [e.value for e in lifecycle.allowed_events(app.status)]
    return base


def validator_dict(v: Validator, weight_policy: str = "sqrt") -> dict:
    return {
        "id": v.id, "address": v.address, "display_name": v.display_name,
        "stake_amount": v.stake_amount, "suspended": v.suspended,
        "weight": registry.compute_weight(v.stake_amount, weight_policy),
        "registered_at": isoformat(v.registered_at),
        "updated_at": isoformat(v.updated_at),
    }


def notification_dict(n: Notification) -> dict:
    return {
        "id": n.id, "user_id": n.user_id, "application_id": n.application_id,
        "event_type": n.event_type, "title": n.title, "message": n.message,
        "created_at": isoformat(n.created_at), "read_at": isoformat(n.read_at),
    }


def _notify_transition(session: Session, result: TransitionResult | None) -> None:
    if result is not None:
        notifier.notify_status(session, result.application.user_id, result.application.id, result.status)


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


def _transition(
    session: Session, application_id: int, event: LifecycleEvent, config: EngineConfig,
    *, source_id: str, actor: str = "system",
) -> TransitionResult:
    with application_lock(application_id):
        try:
            result = lifecycle.apply(session, application_id, event, config, source_id=source_id, actor=actor)
            session.commit()
        except Exception:
            session.rollback()
            raise
    _notify_transition(session, result)
    return result


def _insert_application(session: Session, payload: dict[str, Any]) -> Application:
    app = Application(
        status=ApplicationStatus.SUBMITTED,
        submitted_at=utcnow(),
        **{f: payload[f] for f in PAYLOAD_FIELDS if f in payload},
    )
    session.add(app)
    session.flush()
    return app


def _insert_documents(session: Session, app: Application, documents: list[dict[str, Any]]) -> None:
    for doc in documents:
        session.add(Document(application_id=app.id, **{f: doc[f] for f in DOCUMENT_FIELDS if f in doc}))
    session.flush()


def create_application(
    session: Session,
    payload: dict[str, Any],
    documents: list[dict[str, Any]],
    config: EngineConfig,
    *,
    begin: bool = True,
) -> Application:
    """Persist a submission and (by default) move it into analysis."""
    try:
        app = _insert_application(session, payload)
        _insert_documents(session, app, documents)
        session.commit()
    except Exception:
        session.rollback()
        raise
    log.info("Application %s submitted by %s (%s, %s)", app.id, app.user_id, app.title, app.institution)
    if begin:
        begin_analysis(session, app.id, config)
    session.refresh(app)
    return app


def begin_analysis(session: Session, application_id: int, config: EngineConfig) -> TransitionResult:
    return _transition(session, application_id, LifecycleEvent.BEGIN_ANALYSIS, config, source_id="submission")


def list_applications(
    session: Session,
    *,
    status: str | None = None,
    user_id: str | None = None,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[dict], int]:
    query = select(Application)
    if status:
        statuses = [ApplicationStatus(s.strip()) for s in status.split(",") if s.strip()]
        query = query.where(Application.status.in_(statuses))
    if user_id:
        query = query.where(Application.user_id == user_id)
    total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    rows = session.execute(
        query.order_by(Application.id.desc()).offset((page - 1) * per_page).limit(per_page)
    ).scalars().all()
    return [application_summary(a) for a in rows], total


# ---------------------------------------------------------------------------
# Analysis and pre-screen gate
# ---------------------------------------------------------------------------


@dataclass
class AnalysisOutcome:
    analysis: AIAnalysis
    outcome: gate.PreScreenOutcome
    transition: TransitionResult | None = None


def record_analysis(
    session: Session, application_id: int, analysis: AIAnalysis, config: EngineConfig,
) -> AnalysisOutcome:
    """Store an analysis attempt and route the application through the gate.

    ``insufficient`` leaves the application in ``ai-checking`` awaiting a new
    attempt; the other outcomes transition it.
    """
    with application_lock(application_id):
        try:
            app = _get_or_error(session, Application, application_id, "Application")
            session.refresh(app)
            if app.status is not ApplicationStatus.AI_CHECKING:
                error = AlreadyTerminal if app.status in TERMINAL_STATUSES else InvalidTransition
                raise error(application_id, app.status.value, "record-analysis")

            attempts = session.execute(
                select(func.count(AIAnalysis.id)).where(AIAnalysis.application_id == application_id)
            ).scalar_one()
            analysis.application_id = application_id
            analysis.attempt = attempts + 1
            outcome = gate.evaluate(analysis, config)
            analysis.prescreen_outcome = outcome.value
            session.add(analysis)
            session.flush()

            result = None
            source_id = f"analysis:{analysis.id}"
            if outcome is gate.PreScreenOutcome.AUTO_ADVANCE:
                result = lifecycle.apply(session, application_id, LifecycleEvent.PRESCREEN_ADVANCE, config,
                                         source_id=source_id)
            elif outcome is gate.PreScreenOutcome.AUTO_FLAG:
                result = lifecycle.apply(session, application_id, LifecycleEvent.PRESCREEN_FLAG, config,
                                         source_id=source_id, trigger=RejectionTrigger.from_analysis(analysis))
            session.commit()
        except Exception:
            session.rollback()
            raise

    log.info("Analysis attempt %d for application %s: %s (confidence %.2f, authenticity %.2f)",
             analysis.attempt, application_id, outcome.value,
             analysis.confidence_level, analysis.document_authenticity_score)
    _notify_transition(session, result)
    return AnalysisOutcome(analysis=analysis, outcome=outcome, transition=result)


async def run_analysis(
    session: Session, application_id: int, config: EngineConfig, client: LLMClient | None = None,
) -> AnalysisOutcome:
    """Call the analysis collaborator and record its result.

    Collaborator failures raise :class:`UpstreamUnavailable` and leave the
    application in ``ai-checking``.
    """
    app = _get_or_error(session, Application, application_id, "Application")
    if app.status is ApplicationStatus.SUBMITTED:
        begin_analysis(session, application_id, config)
        session.refresh(app)
    if app.status is not ApplicationStatus.AI_CHECKING:
        error = AlreadyTerminal if app.status in TERMINAL_STATUSES else InvalidTransition
        raise error(application_id, app.status.value, "run-analysis")

    if client is None:
        client = LLMClient()
    try:
        analysis = await analyze_application(app, list(app.documents), client)
    except AnalysisCallError as exc:
        log.warning("Analysis for application %s failed (retryable=%s): %s", application_id, exc.retryable, exc)
        raise UpstreamUnavailable("analysis", str(exc)) from exc
    return record_analysis(session, application_id, analysis, config)


# ---------------------------------------------------------------------------
# Voting
# ---------------------------------------------------------------------------


async def cast_vote(
    session: Session,
    application_id: int,
    validator_address: str,
    value: VoteValue | str,
    reasoning: str,
    config: EngineConfig,
    ledger: LedgerClient | None = None,
) -> VoteReceipt:
    """Accept a vote; if it approves the application, submit the certificate."""
    receipt = voting.submit_vote(session, application_id, validator_address, value, reasoning, config)
    _notify_transition(session, receipt.transition)
    if receipt.transition is not None and receipt.transition.issuance is not None:
        await issuance.submit_issuance(session, application_id, ledger or LedgerClient(), config)
    return receipt


def expire_voting_windows(
    session: Session, config: EngineConfig, now: datetime | None = None,
) -> list[TransitionResult]:
    """Apply the tie-break to every application whose voting window elapsed."""
    now = now or utcnow()
    rows = session.execute(
        select(Application.id, Application.review_opened_at).where(
            Application.status == ApplicationStatus.UNDER_REVIEW,
            Application.review_opened_at.is_not(None),
        )
    ).all()
    results: list[TransitionResult] = []
    for app_id, opened in rows:
        if as_utc(opened) + config.max_voting_window > now:
            continue
        try:
            result = voting.resolve_window(session, app_id, config)
        except TransitionError as exc:
            log.info("Window expiry for application %s skipped: %s", app_id, exc)
            continue
        if result is not None:
            _notify_transition(session, result)
            results.append(result)
    return results


async def run_sweep(
    session: Session, config: EngineConfig, ledger: LedgerClient | None = None,
    now: datetime | None = None,
) -> list[TransitionResult]:
    """Expire voting windows, then submit certificates for the approvals."""
    results = expire_voting_windows(session, config, now)
    for result in results:
        if result.issuance is not None:
            await issuance.submit_issuance(session, result.application.id, ledger or LedgerClient(), config)
    return results


async def retry_issuance(
    session: Session, application_id: int, config: EngineConfig, ledger: LedgerClient | None = None,
) -> CertificateIssuance:
    """Re-arm a failed issuance and submit it again."""
    issuance.rearm(session, application_id)
    session.commit()
    return await issuance.submit_issuance(session, application_id, ledger or LedgerClient(), config)


# ---------------------------------------------------------------------------
# Applicant and administrative actions
# ---------------------------------------------------------------------------


def withdraw(session: Session, application_id: int, config: EngineConfig, actor: str = "applicant") -> TransitionResult:
    return _transition(session, application_id, LifecycleEvent.WITHDRAW, config, source_id="withdraw", actor=actor)


def unflag(session: Session, application_id: int, config: EngineConfig, actor: str = "admin") -> TransitionResult:
    """Administrative override: reopen a flagged application for review."""
    previous = session.execute(
        select(func.count(StatusTransition.id)).where(
            StatusTransition.application_id == application_id,
            StatusTransition.event == LifecycleEvent.UNFLAG.value,
        )
    ).scalar_one()
    return _transition(session, application_id, LifecycleEvent.UNFLAG, config,
                       source_id=f"unflag:{previous + 1}", actor=actor)


def resubmit(
    session: Session,
    application_id: int,
    config: EngineConfig,
    changes: dict[str, Any] | None = None,
    documents: list[dict[str, Any]] | None = None,
) -> Application:
    """Create a new application superseding a rejected or flagged one.

    The original is never edited. A flagged original is withdrawn in the same
    transaction that inserts the successor, under the original's lock, so an
    application is resubmitted at most once.
    """
    with application_lock(application_id):
        try:
            app = _get_or_error(session, Application, application_id, "Application")
            session.refresh(app)
            record = latest_rejection(app)
            if app.status not in (ApplicationStatus.REJECTED, ApplicationStatus.FLAGGED) or record is None:
                raise ResubmissionNotAllowed(f"Application {application_id} has no rejection to resubmit against")
            if not record.can_resubmit:
                raise ResubmissionNotAllowed(
                    f"Application {application_id} was rejected for {record.rejection_reason.value}; "
                    "resubmission not allowed"
                )
            successor = session.execute(
                select(Application.id).where(Application.supersedes_id == application_id)
            ).first()
            if successor is not None:
                raise ResubmissionNotAllowed(f"Application {application_id} was already resubmitted as {successor[0]}")

            withdrawn = None
            if app.status is ApplicationStatus.FLAGGED:
                withdrawn = lifecycle.apply(session, application_id, LifecycleEvent.WITHDRAW, config,
                                            source_id="resubmission", actor="resubmission")

            payload = {f: getattr(app, f) for f in PAYLOAD_FIELDS}
            payload.update({k: v for k, v in (changes or {}).items() if k in PAYLOAD_FIELDS and v is not None})
            payload["supersedes_id"] = application_id
            if documents is None:
                documents = [{f: getattr(d, f) for f in DOCUMENT_FIELDS} for d in app.documents]
            try:
                new_app = _insert_application(session, payload)
            except IntegrityError as exc:
                # Another process inserted the successor first.
                raise ResubmissionNotAllowed(f"Application {application_id} was already resubmitted") from exc
            _insert_documents(session, new_app, documents)
            session.commit()
        except Exception:
            session.rollback()
            raise

    _notify_transition(session, withdrawn)
    log.info("Application %s resubmitted as %s", application_id, new_app.id)
    begin_analysis(session, new_app.id, config)
    session.refresh(new_app)
    return new_app


def file_appeal(session: Session, application_id: int, reason: str) -> Appeal:
    app = _get_or_error(session, Application, application_id, "Application")
    session.refresh(app)
    record = latest_rejection(app)
    if record is None or not record.can_appeal:
        raise AppealNotAllowed(f"Application {application_id} has no appealable rejection")
    existing = session.execute(select(Appeal.id).where(Appeal.rejection_record_id == record.id)).first()
    if existing is not None:
        raise AppealNotAllowed(f"An appeal was already filed for application {application_id}")
    appeal = Appeal(application_id=application_id, rejection_record_id=record.id, reason=reason)
    session.add(appeal)
    session.commit()
    log.info("Appeal %s filed for application %s (%s)", appeal.id, application_id, record.rejection_reason.value)
    notifier.notify(session, app.user_id, "appeal-filed", application_id,
                    "Appeal received", "Your appeal was filed and will be reviewed.")
    return appeal


def list_notifications(session: Session, user_id: str, unread_only: bool = False) -> list[dict]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.read_at.is_(None))
    rows = session.execute(query.order_by(Notification.id.desc())).scalars().all()
    return [notification_dict(n) for n in rows]


def mark_notification_read(session: Session, notification_id: int) -> Notification:
    """Caller must commit."""
    note = _get_or_error(session, Notification, notification_id, "Notification")
    if note.read_at is None:
        note.read_at = utcnow()
    return note


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def compute_stats(session: Session) -> dict:
    by_status: Counter[str] = Counter()
    for status, count in session.execute(
        select(Application.status, func.count(Application.id)).group_by(Application.status)
    ).all():
        by_status[status.value] = count
    by_reason: Counter[str] = Counter()
    for reason, count in session.execute(
        select(RejectionRecord.rejection_reason, func.count(RejectionRecord.id)).group_by(RejectionRecord.rejection_reason)
    ).all():
        by_reason[reason.value] = count
    by_issuance: Counter[str] = Counter()
    for state, count in session.execute(
        select(CertificateIssuance.status, func.count(CertificateIssuance.id)).group_by(CertificateIssuance.status)
    ).all():
        by_issuance[state.value] = count
    validators = session.execute(select(func.count(Validator.id))).scalar_one()
    votes = session.execute(select(func.count(Vote.id))).scalar_one()
    return {
        "total": sum(by_status.values()),
        "by_status": dict(by_status),
        "rejections_by_reason": dict(by_reason),
        "issuance_by_status": dict(by_issuance),
        "validators": validators,
        "votes": votes,
    }


_FINAL_VOTE = {
    ApplicationStatus.APPROVED: VoteValue.APPROVE,
    ApplicationStatus.REJECTED: VoteValue.REJECT,
    ApplicationStatus.FLAGGED: VoteValue.FLAG,
}


def validator_stats(session: Session, address: str, config: EngineConfig) -> dict:
    """Review history of one validator against the outcomes that followed."""
    validator = registry.ValidatorRegistry(session, config.weight_policy).get(address)
    if validator is None:
        raise NotFound("Validator", address)
    rows = session.execute(
        select(Vote.value, Application.status)
        .join(Application, Application.id == Vote.application_id)
        .where(Vote.validator_address == validator.address)
    ).all()
    decided = [(value, status) for value, status in rows if status in _FINAL_VOTE]
    agreed = sum(1 for value, status in decided if _FINAL_VOTE[status] is value)
    return {
        **validator_dict(validator, config.weight_policy),
        "total_reviews": len(rows),
        "decided_reviews": len(decided),
        "agreement_rate": agreed / len(decided) if decided else None,
        "votes_by_value": dict(Counter(value.value for value, _ in rows)),
    }
