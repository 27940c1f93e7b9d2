"""Tests for the lifecycle state machine: transitions, idempotency, side effects."""
from __future__ import annotations

import pytest
from conftest import make_application
from sqlalchemy import func, select

from credchain.errors import AlreadyTerminal, InvalidTransition, NotFound
from credchain.lifecycle import LifecycleEvent, TRANSITIONS, allowed_events, apply, idempotency_key
from credchain.models import (
    Application, ApplicationStatus, CertificateIssuance, RejectionReason, RejectionRecord, StatusTransition,
    TERMINAL_STATUSES,
)
from credchain.rejection import RejectionTrigger, VoteEvidence

S = ApplicationStatus


def _count(session, model) -> int:
    return session.execute(select(func.count(model.id))).scalar_one()


def _flag_trigger() -> RejectionTrigger:
    return RejectionTrigger(source="ai", indicators=("signature-mismatch",), authenticity_score=0.3, outcome="flag")


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self):
        for event, (sources, _) in TRANSITIONS.items():
            assert not (sources & TERMINAL_STATUSES), event

    def test_allowed_events(self):
        assert allowed_events(S.SUBMITTED) == [LifecycleEvent.BEGIN_ANALYSIS, LifecycleEvent.WITHDRAW]
        assert set(allowed_events(S.FLAGGED)) == {LifecycleEvent.UNFLAG, LifecycleEvent.WITHDRAW}
        for status in TERMINAL_STATUSES:
            assert allowed_events(status) == []

    def test_idempotency_key(self):
        assert idempotency_key(3, LifecycleEvent.CONSENSUS_APPROVE, "approve:ab") == "3:consensus-approve:approve:ab"


class TestApply:
    def test_begin_analysis(self, session, config):
        app = make_application(session)
        result = apply(session, app.id, LifecycleEvent.BEGIN_ANALYSIS, config, source_id="submission")
        session.commit()
        assert result.previous is S.SUBMITTED
        assert result.status is S.AI_CHECKING
        assert app.status is S.AI_CHECKING
        row = session.execute(select(StatusTransition)).scalars().one()
        assert (row.from_status, row.to_status, row.event) == (S.SUBMITTED, S.AI_CHECKING, "begin-analysis")

    def test_prescreen_advance_opens_voting(self, session, config):
        app = make_application(session, S.AI_CHECKING)
        apply(session, app.id, LifecycleEvent.PRESCREEN_ADVANCE, config, source_id="analysis:1")
        session.commit()
        assert app.status is S.UNDER_REVIEW
        assert app.review_opened_at is not None

    def test_unknown_application(self, session, config):
        with pytest.raises(NotFound):
            apply(session, 999, LifecycleEvent.BEGIN_ANALYSIS, config, source_id="x")

    def test_invalid_transition(self, session, config):
        app = make_application(session)
        with pytest.raises(InvalidTransition):
            apply(session, app.id, LifecycleEvent.CONSENSUS_APPROVE, config, source_id="approve:x")
        assert app.status is S.SUBMITTED

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_rejects_everything(self, session, config, status):
        app = make_application(session, status)
        for event in LifecycleEvent:
            with pytest.raises(AlreadyTerminal):
                apply(session, app.id, event, config, source_id="late", trigger=_flag_trigger())
        assert app.status is status
        assert _count(session, StatusTransition) == 0

    def test_rejecting_event_requires_trigger(self, session, config):
        app = make_application(session, S.UNDER_REVIEW)
        with pytest.raises(ValueError):
            apply(session, app.id, LifecycleEvent.CONSENSUS_REJECT, config, source_id="reject:x")

    def test_withdraw_from_any_open_state(self, session, config):
        for status in (S.SUBMITTED, S.AI_CHECKING, S.UNDER_REVIEW, S.FLAGGED):
            app = make_application(session, status)
            apply(session, app.id, LifecycleEvent.WITHDRAW, config, source_id="withdraw")
            session.commit()
            assert app.status is S.WITHDRAWN


class TestSideEffects:
    def test_approve_emits_one_issuance(self, session, config):
        app = make_application(session, S.UNDER_REVIEW)
        result = apply(session, app.id, LifecycleEvent.CONSENSUS_APPROVE, config, source_id="approve:abc")
        session.commit()
        assert result.issuance is not None
        assert result.issuance.transition_id == result.transition.id
        assert _count(session, CertificateIssuance) == 1

    def test_replayed_approve_is_already_terminal(self, session, config):
        app = make_application(session, S.UNDER_REVIEW)
        apply(session, app.id, LifecycleEvent.CONSENSUS_APPROVE, config, source_id="approve:abc")
        session.commit()
        with pytest.raises(AlreadyTerminal):
            apply(session, app.id, LifecycleEvent.CONSENSUS_APPROVE, config, source_id="approve:abc")
        session.rollback()
        assert _count(session, CertificateIssuance) == 1
        assert _count(session, StatusTransition) == 1

    def test_flag_emits_rejection_record(self, session, config):
        app = make_application(session, S.AI_CHECKING)
        result = apply(session, app.id, LifecycleEvent.PRESCREEN_FLAG, config,
                       source_id="analysis:1", trigger=_flag_trigger())
        session.commit()
        record = result.rejection
        assert record.transition_id == result.transition.id
        assert record.rejection_reason is RejectionReason.FORGED_DOCUMENTS
        assert (record.can_resubmit, record.can_appeal) == (False, True)

    def test_reject_from_votes(self, session, config):
        app = make_application(session, S.UNDER_REVIEW)
        trigger = RejectionTrigger(
            source="votes", outcome="reject",
            votes=(VoteEvidence("0xa", "reject", 2.0, "transcript missing"),),
        )
        result = apply(session, app.id, LifecycleEvent.CONSENSUS_REJECT, config,
                       source_id="reject:abc", trigger=trigger)
        session.commit()
        assert result.rejection.rejection_reason is RejectionReason.MISSING_INFORMATION
        assert result.rejection.trigger == "votes"

    def test_flag_unflag_flag_keeps_both_records(self, session, config):
        app = make_application(session, S.UNDER_REVIEW)
        apply(session, app.id, LifecycleEvent.CONSENSUS_FLAG, config, source_id="flag:1", trigger=_flag_trigger())
        apply(session, app.id, LifecycleEvent.UNFLAG, config, source_id="unflag:1", actor="admin")
        apply(session, app.id, LifecycleEvent.CONSENSUS_FLAG, config, source_id="flag:2", trigger=_flag_trigger())
        session.commit()
        assert app.status is S.FLAGGED
        assert _count(session, RejectionRecord) == 2

    def test_stale_session_loses(self, SessionLocal, config):
        setup = SessionLocal()
        app_id = make_application(setup, S.UNDER_REVIEW).id
        setup.close()

        first, second = SessionLocal(), SessionLocal()
        try:
            stale = second.get(Application, app_id)
            assert stale.status is S.UNDER_REVIEW
            apply(first, app_id, LifecycleEvent.CONSENSUS_APPROVE, config, source_id="approve:one")
            first.commit()
            with pytest.raises(AlreadyTerminal):
                apply(second, app_id, LifecycleEvent.CONSENSUS_REJECT, config,
                      source_id="reject:two", trigger=_flag_trigger())
            second.rollback()
            assert _count(second, RejectionRecord) == 0
        finally:
            first.close()
            second.close()


class TestPayloadImmutability:
    def test_payload_change_rejected(self, session):
        app = make_application(session)
        app.title = "PhD Physics"
        with pytest.raises(ValueError):
            session.commit()
        session.rollback()
