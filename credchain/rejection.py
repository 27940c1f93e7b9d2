"""Rejection analyzer: reason derivation and resubmission/appeal policy.

A rejection (or flag) is always triggered by one of two sources:

- **ai** -- the pre-screen gate auto-flagged the submission. The reason is
  derived from the forgery indicator types reported by the analysis.
- **votes** -- the validator quorum decided reject or flag. The reason is
  the reason most strongly supported (by snapshotted vote weight) in the
  reasoning of the deciding side.

The reason then maps through a fixed policy table to the
``(can_resubmit, can_appeal)`` pair. Everything in this module is a pure
function of its inputs.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, Literal, Mapping

from pydantic import BaseModel

from credchain.models import AIAnalysis, Application, RejectionReason, RejectionRecord, Vote
from credchain.utils import json_parse


class RejectionPolicy(BaseModel, frozen=True):
    can_resubmit: bool
    can_appeal: bool


DEFAULT_REJECTION_POLICY: dict[RejectionReason, RejectionPolicy] = {
    RejectionReason.FORGED_DOCUMENTS: RejectionPolicy(can_resubmit=False, can_appeal=True),
    RejectionReason.TAMPERED_DOCUMENTS: RejectionPolicy(can_resubmit=False, can_appeal=True),
    RejectionReason.MISSING_INFORMATION: RejectionPolicy(can_resubmit=True, can_appeal=False),
    RejectionReason.ELIGIBILITY_MISMATCH: RejectionPolicy(can_resubmit=True, can_appeal=True),
    RejectionReason.INVALID_DOCUMENTS: RejectionPolicy(can_resubmit=True, can_appeal=False),
}


def policy_for(
    reason: RejectionReason,
    policy: Mapping[RejectionReason, RejectionPolicy] | None = None,
) -> RejectionPolicy:
    return (policy or DEFAULT_REJECTION_POLICY)[reason]


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VoteEvidence:
    validator_address: str
    value: str
    weight: float
    reasoning: str


@dataclass(frozen=True)
class RejectionTrigger:
    source: Literal["ai", "votes"]
    indicators: tuple[str, ...] = ()
    missing_information: tuple[str, ...] = ()
    authenticity_score: float | None = None
    outcome: str = ""
    votes: tuple[VoteEvidence, ...] = field(default_factory=tuple)

    @classmethod
    def from_analysis(cls, analysis: AIAnalysis) -> RejectionTrigger:
        return cls(
            source="ai",
            indicators=tuple(str(i) for i in json_parse(analysis.forgery_indicators_json, [])),
            missing_information=tuple(str(m) for m in json_parse(analysis.missing_information_json, [])),
            authenticity_score=analysis.document_authenticity_score,
            outcome="flag",
        )

    @classmethod
    def from_votes(cls, votes: Iterable[Vote], outcome: str) -> RejectionTrigger:
        """Keep only the deciding side's votes, ordered by validator address."""
        deciding = sorted(
            (v for v in votes if v.value.value == outcome),
            key=lambda v: v.validator_address,
        )
        return cls(
            source="votes",
            outcome=outcome,
            votes=tuple(
                VoteEvidence(v.validator_address, v.value.value, v.weight, v.reasoning or "")
                for v in deciding
            ),
        )


# ---------------------------------------------------------------------------
# Reason derivation
# ---------------------------------------------------------------------------

# Matched against the start of each word of an indicator, so "metadata-edited"
# is tampering while "unaccredited-institution" is not.
_TAMPER_MARKERS = ("tamper", "alter", "edit", "modif", "splice", "metadata")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")

# Checked in order; the first reason whose keywords appear in a vote's
# reasoning is the reason that vote supports.
_REASON_KEYWORDS: tuple[tuple[RejectionReason, tuple[str, ...]], ...] = (
    (RejectionReason.FORGED_DOCUMENTS, ("forged", "forgery", "fake", "counterfeit", "fabricated", "signature")),
    (RejectionReason.TAMPERED_DOCUMENTS, ("tamper", "altered", "edited", "doctored", "modified")),
    (RejectionReason.MISSING_INFORMATION, ("missing", "incomplete", "not provided", "absent")),
    (RejectionReason.ELIGIBILITY_MISMATCH, ("eligib", "ineligib", "mismatch", "does not match", "doesn't match", "requirement")),
    (RejectionReason.INVALID_DOCUMENTS, ("invalid", "unreadable", "illegible", "expired", "unverifiable")),
)
_PRECEDENCE = [reason for reason, _ in _REASON_KEYWORDS]
# Keywords match at word starts only ("edited" must not hit "accredited").
_REASON_PATTERNS = [
    (reason, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + ")"))
    for reason, keywords in _REASON_KEYWORDS
]


def _is_tamper_indicator(indicator: str) -> bool:
    words = _WORD_SPLIT.split(indicator.lower())
    return any(word.startswith(_TAMPER_MARKERS) for word in words if word)


def reason_from_indicators(
    indicators: Iterable[str], missing_information: Iterable[str] = (),
) -> RejectionReason:
    """Map AI indicator types to a reason. Forgery outranks tampering."""
    indicators = [i for i in indicators if i]
    if any(not _is_tamper_indicator(i) for i in indicators):
        return RejectionReason.FORGED_DOCUMENTS
    if indicators:
        return RejectionReason.TAMPERED_DOCUMENTS
    if any(m for m in missing_information):
        return RejectionReason.MISSING_INFORMATION
    return RejectionReason.INVALID_DOCUMENTS


def classify_reasoning(text: str) -> RejectionReason | None:
    lowered = (text or "").lower()
    for reason, pattern in _REASON_PATTERNS:
        if pattern.search(lowered):
            return reason
    return None


def reason_from_votes(votes: Iterable[VoteEvidence]) -> tuple[RejectionReason, dict[str, float]]:
    """Weighted vote over reasons cited in reasoning text.

    Returns the winning reason and the per-reason weight totals. Ties are
    broken by the fixed keyword precedence; when no vote cites a recognizable
    reason the result is ``invalid-documents``.
    """
    support: dict[RejectionReason, list[float]] = {}
    for v in votes:
        reason = classify_reasoning(v.reasoning)
        if reason is not None:
            support.setdefault(reason, []).append(v.weight)
    totals = {reason: math.fsum(ws) for reason, ws in support.items()}
    if not totals:
        return RejectionReason.INVALID_DOCUMENTS, {}
    best = max(totals.values())
    winner = next(r for r in _PRECEDENCE if totals.get(r) == best)
    return winner, {r.value: w for r, w in totals.items()}


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


def _describe_ai(trigger: RejectionTrigger, reason: RejectionReason) -> str:
    parts = [f"Automated pre-screen flagged the submission ({reason.value})."]
    if trigger.authenticity_score is not None:
        parts.append(f"Document authenticity score: {trigger.authenticity_score:.2f}.")
    if trigger.indicators:
        parts.append(f"Indicators: {', '.join(trigger.indicators)}.")
    if trigger.missing_information:
        parts.append(f"Missing information: {', '.join(trigger.missing_information)}.")
    return " ".join(parts)


def _describe_votes(trigger: RejectionTrigger, reason: RejectionReason) -> str:
    weight = math.fsum(v.weight for v in trigger.votes)
    parts = [
        f"Validator quorum decided {trigger.outcome} ({reason.value}): "
        f"{len(trigger.votes)} validator(s) with combined weight {weight:.2f}."
    ]
    cited = [v.reasoning.strip() for v in trigger.votes if v.reasoning and v.reasoning.strip()]
    if cited:
        parts.append("Reasons cited: " + " | ".join(cited))
    return " ".join(parts)


def analyze(
    application: Application,
    trigger: RejectionTrigger,
    policy: Mapping[RejectionReason, RejectionPolicy] | None = None,
) -> RejectionRecord:
    """Build the (unsaved) rejection record for *application*.

    The caller attaches ``transition_id`` and adds it to the session in the
    same transaction as the status change.
    """
    if trigger.source == "ai":
        reason = reason_from_indicators(trigger.indicators, trigger.missing_information)
        detail = _describe_ai(trigger, reason)
        evidence = {
            "indicators": list(trigger.indicators),
            "missing_information": list(trigger.missing_information),
            "authenticity_score": trigger.authenticity_score,
        }
    else:
        reason, totals = reason_from_votes(trigger.votes)
        detail = _describe_votes(trigger, reason)
        evidence = {
            "outcome": trigger.outcome,
            "reason_weights": totals,
            "validators": [v.validator_address for v in trigger.votes],
        }
    rules = policy_for(reason, policy)
    return RejectionRecord(
        application_id=application.id,
        rejection_reason=reason,
        detailed_analysis=detail,
        evidence_json=json.dumps(evidence, sort_keys=True),
        trigger=trigger.source,
        can_resubmit=rules.can_resubmit,
        can_appeal=rules.can_appeal,
    )
