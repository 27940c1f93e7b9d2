"""Application lifecycle state machine.

States and events
-----------------
::

    submitted --begin-analysis--> ai-checking
    ai-checking --prescreen-advance--> under-review
    ai-checking --prescreen-flag--> flagged
    under-review --consensus-approve--> approved
    under-review --consensus-reject--> rejected
    under-review --consensus-flag--> flagged
    flagged --unflag--> under-review            (administrative override)
    <any non-terminal> --withdraw--> withdrawn

``approved``, ``rejected`` and ``withdrawn`` are terminal.

Every transition is committed compare-and-swap style: the status column is
updated with ``WHERE status = <observed status>``, so a concurrent caller
that lost the race fails with :class:`AlreadyTerminal` or
:class:`InvalidTransition` instead of overwriting state. Each transition is
logged under an idempotency key (application + event + source decision id)
that is unique in the database, so a replayed decision can never fire its
side effect twice. Side effects (rejection record, issuance request) are
added in the same transaction as the status change.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credchain import issuance, rejection
from credchain.config import EngineConfig
from credchain.errors import AlreadyTerminal, InvalidTransition, NotFound
from credchain.models import (
    Application, ApplicationStatus, CertificateIssuance, RejectionRecord, StatusTransition,
    TERMINAL_STATUSES, Vote,
)
from credchain.rejection import RejectionTrigger
from credchain.utils import utcnow

log = logging.getLogger(__name__)


class LifecycleEvent(str, enum.Enum):
    BEGIN_ANALYSIS = "begin-analysis"
    PRESCREEN_ADVANCE = "prescreen-advance"
    PRESCREEN_FLAG = "prescreen-flag"
    CONSENSUS_APPROVE = "consensus-approve"
    CONSENSUS_REJECT = "consensus-reject"
    CONSENSUS_FLAG = "consensus-flag"
    UNFLAG = "unflag"
    WITHDRAW = "withdraw"


S = ApplicationStatus
_NON_TERMINAL = frozenset(s for s in ApplicationStatus if s not in TERMINAL_STATUSES)

# event -> (allowed source states, target state)
TRANSITIONS: dict[LifecycleEvent, tuple[frozenset[ApplicationStatus], ApplicationStatus]] = {
    LifecycleEvent.BEGIN_ANALYSIS: (frozenset({S.SUBMITTED}), S.AI_CHECKING),
    LifecycleEvent.PRESCREEN_ADVANCE: (frozenset({S.AI_CHECKING}), S.UNDER_REVIEW),
    LifecycleEvent.PRESCREEN_FLAG: (frozenset({S.AI_CHECKING}), S.FLAGGED),
    LifecycleEvent.CONSENSUS_APPROVE: (frozenset({S.UNDER_REVIEW}), S.APPROVED),
    LifecycleEvent.CONSENSUS_REJECT: (frozenset({S.UNDER_REVIEW}), S.REJECTED),
    LifecycleEvent.CONSENSUS_FLAG: (frozenset({S.UNDER_REVIEW}), S.FLAGGED),
    LifecycleEvent.UNFLAG: (frozenset({S.FLAGGED}), S.UNDER_REVIEW),
    LifecycleEvent.WITHDRAW: (_NON_TERMINAL, S.WITHDRAWN),
}


@dataclass
class TransitionResult:
    application: Application
    previous: ApplicationStatus
    status: ApplicationStatus
    transition: StatusTransition
    rejection: RejectionRecord | None = None
    issuance: CertificateIssuance | None = None


def idempotency_key(application_id: int, event: LifecycleEvent, source_id: str) -> str:
    return f"{application_id}:{event.value}:{source_id}"


def allowed_events(status: ApplicationStatus) -> list[LifecycleEvent]:
    return [e for e, (sources, _) in TRANSITIONS.items() if status in sources]


def _refuse(application_id: int, status: ApplicationStatus, event: LifecycleEvent) -> Exception:
    if status in TERMINAL_STATUSES:
        return AlreadyTerminal(application_id, status.value, event.value)
    return InvalidTransition(application_id, status.value, event.value)


def apply(
    session: Session,
    application_id: int,
    event: LifecycleEvent,
    config: EngineConfig,
    *,
    source_id: str,
    actor: str = "system",
    trigger: RejectionTrigger | None = None,
    votes: Iterable[Vote] = (),
) -> TransitionResult:
    """Apply *event* to an application (caller must commit).

    ``trigger`` is required for events entering ``rejected`` or ``flagged``;
    ``votes`` is the approving vote set for ``consensus-approve``.
    """
    app = session.get(Application, application_id, populate_existing=True)
    if app is None:
        raise NotFound("Application", application_id)
    current = app.status
    sources, target = TRANSITIONS[event]
    if current not in sources:
        raise _refuse(application_id, current, event)
    if target in (S.REJECTED, S.FLAGGED) and trigger is None:
        raise ValueError(f"{event.value} requires a rejection trigger")

    key = idempotency_key(application_id, event, source_id)
    replayed = session.execute(
        select(StatusTransition.id).where(StatusTransition.idempotency_key == key)
    ).first()
    if replayed is not None:
        log.warning("Replayed transition %s ignored", key)
        raise _refuse(application_id, current, event)

    now = utcnow()
    values: dict = {"status": target, "updated_at": now}
    if target is S.UNDER_REVIEW:
        values["review_opened_at"] = now
    if event is LifecycleEvent.UNFLAG:
        # Votes from the flagged round stay on record but no longer count.
        values["review_round"] = Application.review_round + 1
    swapped = session.execute(
        update(Application)
        .where(Application.id == application_id, Application.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if swapped.rowcount != 1:
        actual = session.execute(
            select(Application.status).where(Application.id == application_id)
        ).scalar_one()
        log.info("Lost transition race on application %s (%s, now %s)", application_id, event.value, actual.value)
        raise _refuse(application_id, actual, event)

    transition = StatusTransition(
        application_id=application_id, event=event.value,
        from_status=current, to_status=target,
        source_id=source_id, idempotency_key=key, actor=actor,
    )
    session.add(transition)
    try:
        session.flush()
    except IntegrityError as exc:
        raise _refuse(application_id, current, event) from exc
    session.refresh(app)

    result = TransitionResult(application=app, previous=current, status=target, transition=transition)
    if target in (S.REJECTED, S.FLAGGED):
        record = rejection.analyze(app, trigger, config.rejection_policy)
        record.transition_id = transition.id
        session.add(record)
        result.rejection = record
    elif target is S.APPROVED:
        request = issuance.build_request(app, transition, votes)
        session.add(request)
        result.issuance = request
    session.flush()

    log.info("Application %s: %s -> %s (%s, source=%s, actor=%s)",
             application_id, current.value, target.value, event.value, source_id, actor)
    return result
