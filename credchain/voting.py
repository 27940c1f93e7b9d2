"""Vote aggregation under a per-application critical section.

A vote is accepted only while the application is ``under-review``, from an
eligible validator that has not voted on it before. Accepting a vote,
re-evaluating consensus and applying a decisive transition happen inside one
lock (per application id) and one database transaction, so two validators
voting at the same moment can never both "finalize" the application.

The database also enforces one vote per (application, review round,
validator) with a unique constraint; the lock keeps that from being the
common path. Unflagging an application opens a new review round, so only
votes cast since the last reopening are tallied.
"""
from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credchain import consensus, lifecycle
from credchain.config import EngineConfig
from credchain.consensus import ConsensusOutcome, Tally
from credchain.errors import ApplicationNotVotable, DuplicateVote, NotEligible, NotFound
from credchain.lifecycle import LifecycleEvent, TransitionResult
from credchain.models import Application, ApplicationStatus, Validator, Vote, VoteValue
from credchain.registry import ValidatorRegistry, normalize_address
from credchain.rejection import RejectionTrigger
from credchain.utils import canonical_digest, utcnow

log = logging.getLogger(__name__)

# Entries disappear once no caller holds or waits on the lock.
_locks: weakref.WeakValueDictionary[int, threading.Lock] = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


@contextmanager
def application_lock(application_id: int) -> Generator[None, None, None]:
    """Exclusive section for one application. Locks are never shared across ids."""
    with _locks_guard:
        lock = _locks.setdefault(application_id, threading.Lock())
    with lock:
        yield


@dataclass
class VoteReceipt:
    vote: Vote
    tally: Tally
    outcome: ConsensusOutcome
    transition: TransitionResult | None = None


_OUTCOME_EVENTS = {
    ConsensusOutcome.APPROVE: LifecycleEvent.CONSENSUS_APPROVE,
    ConsensusOutcome.REJECT: LifecycleEvent.CONSENSUS_REJECT,
    ConsensusOutcome.FLAG: LifecycleEvent.CONSENSUS_FLAG,
}


def votes_for(session: Session, application_id: int, review_round: int | None = None) -> list[Vote]:
    """Votes of one review round, the application's current one by default."""
    if review_round is None:
        current_round = select(Application.review_round).where(Application.id == application_id).scalar_subquery()
    else:
        current_round = review_round
    return list(session.execute(
        select(Vote)
        .where(Vote.application_id == application_id, Vote.review_round == current_round)
        .order_by(Vote.id)
    ).scalars().all())


def apply_outcome(
    session: Session,
    application_id: int,
    outcome: ConsensusOutcome,
    votes: Sequence[Vote],
    config: EngineConfig,
    actor: str = "consensus",
) -> TransitionResult:
    """Apply the transition for a decisive outcome (caller must hold the lock and commit)."""
    trigger = None
    if outcome is not ConsensusOutcome.APPROVE:
        trigger = RejectionTrigger.from_votes(votes, outcome.value)
    return lifecycle.apply(
        session, application_id, _OUTCOME_EVENTS[outcome], config,
        source_id=consensus.decision_id(votes, outcome),
        actor=actor, trigger=trigger, votes=votes,
    )


def _ineligibility(validator: Validator | None) -> str:
    if validator is None:
        return "not registered"
    if validator.suspended:
        return "suspended"
    return "no stake"


def submit_vote(
    session: Session,
    application_id: int,
    validator_address: str,
    value: VoteValue | str,
    reasoning: str,
    config: EngineConfig,
) -> VoteReceipt:
    """Record a vote and finalize the application if consensus is reached.

    Commits on success and rolls back on any error, so a rejected vote leaves
    the tally exactly as it was.
    """
    address = normalize_address(validator_address)
    value = VoteValue(value)
    with application_lock(application_id):
        try:
            app = session.get(Application, application_id, populate_existing=True)
            if app is None:
                raise NotFound("Application", application_id)
            if app.status is not ApplicationStatus.UNDER_REVIEW:
                raise ApplicationNotVotable(application_id, app.status.value)

            registry = ValidatorRegistry(session, config.weight_policy)
            if not registry.is_eligible(address):
                raise NotEligible(address, _ineligibility(registry.get(address)))

            existing = session.execute(
                select(Vote.id).where(
                    Vote.application_id == application_id,
                    Vote.review_round == app.review_round,
                    Vote.validator_address == address,
                )
            ).first()
            if existing is not None:
                raise DuplicateVote(application_id, address)

            validator = registry.get(address)
            weight = registry.weight_of(address)
            cast_at = utcnow()
            vote = Vote(
                application_id=application_id,
                review_round=app.review_round,
                validator_address=address,
                value=value,
                weight=weight,
                stake_snapshot=validator.stake_amount,
                reasoning=reasoning or "",
                cast_at=cast_at,
                digest=canonical_digest({
                    "application_id": application_id,
                    "review_round": app.review_round,
                    "validator_address": address,
                    "value": value.value,
                    "weight": weight,
                    "reasoning": reasoning or "",
                    "cast_at": cast_at.isoformat(),
                }),
            )
            session.add(vote)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateVote(application_id, address) from exc

            votes = votes_for(session, application_id, app.review_round)
            current = consensus.tally(votes)
            outcome = consensus.evaluate(votes, config)
            transition = None
            if outcome.decisive:
                transition = apply_outcome(session, application_id, outcome, votes, config)
            session.commit()
        except Exception:
            session.rollback()
            raise

    log.info("Vote %s on application %s by %s (weight %.4f); outcome %s",
             value.value, application_id, address, weight, outcome.value)
    return VoteReceipt(vote=vote, tally=current, outcome=outcome, transition=transition)


def resolve_window(
    session: Session, application_id: int, config: EngineConfig,
) -> TransitionResult | None:
    """Apply the tie-break to an application whose voting window has elapsed.

    Returns ``None`` when the application stays open (below quorum). Commits
    when a transition is applied.
    """
    with application_lock(application_id):
        try:
            votes = votes_for(session, application_id)
            outcome = consensus.resolve_expired(votes, config)
            if not outcome.decisive:
                session.rollback()
                return None
            result = apply_outcome(session, application_id, outcome, votes, config, actor="window-expiry")
            session.commit()
        except Exception:
            session.rollback()
            raise
    log.info("Voting window closed for application %s with outcome %s", application_id, outcome.value)
    return result
