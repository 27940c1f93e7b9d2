"""Consensus evaluation: stake-weighted quorum decision over a vote set.

Decision rule
-------------
With fewer distinct voters than ``quorum_threshold`` the outcome is
``pending``. Otherwise, with ``W`` the total weight, in this fixed order:

1. ``W_flag / W >= flag_weight_threshold``          -> ``flag``
2. ``W_approve / W >= approval_weight_threshold``   -> ``approve``
3. ``W_reject / W >= approval_weight_threshold``    -> ``reject``
4. otherwise                                        -> ``pending``

Weights are summed with :func:`math.fsum`, which is exactly rounded, so the
outcome for a given vote set never depends on the order votes arrived in.

Tie-break
---------
When the voting window has elapsed, quorum is met and the rule above is
still ``pending``, :func:`resolve_expired` picks the value with the largest
weight. Equal top weights resolve by precedence ``flag > reject > approve``.
"""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from credchain.config import EngineConfig
from credchain.models import VoteValue
from credchain.utils import canonical_digest


class ConsensusOutcome(str, enum.Enum):
    PENDING = "pending"
    APPROVE = "approve"
    REJECT = "reject"
    FLAG = "flag"

    @property
    def decisive(self) -> bool:
        return self is not ConsensusOutcome.PENDING


class Ballot(Protocol):
    validator_address: str
    value: Any
    weight: float


# Tie-break precedence, most conservative first.
_TIE_BREAK_ORDER = (VoteValue.FLAG, VoteValue.REJECT, VoteValue.APPROVE)


@dataclass
class Tally:
    """Derived per-application tally. Never persisted."""

    counts: dict[VoteValue, int] = field(default_factory=dict)
    weights: dict[VoteValue, float] = field(default_factory=dict)
    distinct_voters: int = 0

    @property
    def total_weight(self) -> float:
        return math.fsum(self.weights.values())

    def fraction(self, value: VoteValue) -> float:
        total = self.total_weight
        return self.weights.get(value, 0.0) / total if total > 0 else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "distinct_voters": self.distinct_voters,
            "total_weight": self.total_weight,
            "counts": {v.value: self.counts.get(v, 0) for v in VoteValue},
            "weights": {v.value: self.weights.get(v, 0.0) for v in VoteValue},
            "fractions": {v.value: self.fraction(v) for v in VoteValue},
        }


def tally(votes: Iterable[Ballot]) -> Tally:
    buckets: dict[VoteValue, list[float]] = {v: [] for v in VoteValue}
    voters: set[str] = set()
    for vote in votes:
        buckets[VoteValue(vote.value)].append(float(vote.weight))
        voters.add(vote.validator_address)
    return Tally(
        counts={v: len(ws) for v, ws in buckets.items()},
        weights={v: math.fsum(ws) for v, ws in buckets.items()},
        distinct_voters=len(voters),
    )


def _decide(t: Tally, config: EngineConfig) -> ConsensusOutcome:
    if t.distinct_voters < config.quorum_threshold or t.total_weight <= 0:
        return ConsensusOutcome.PENDING
    if t.fraction(VoteValue.FLAG) >= config.flag_weight_threshold:
        return ConsensusOutcome.FLAG
    if t.fraction(VoteValue.APPROVE) >= config.approval_weight_threshold:
        return ConsensusOutcome.APPROVE
    if t.fraction(VoteValue.REJECT) >= config.approval_weight_threshold:
        return ConsensusOutcome.REJECT
    return ConsensusOutcome.PENDING


def evaluate(votes: Iterable[Ballot], config: EngineConfig) -> ConsensusOutcome:
    """Compute the consensus outcome for a vote set."""
    return _decide(tally(votes), config)


def resolve_expired(votes: Iterable[Ballot], config: EngineConfig) -> ConsensusOutcome:
    """Outcome once the voting window has elapsed.

    Below quorum the result stays ``pending``: an undersubscribed application
    is left open rather than decided by too few validators.
    """
    t = tally(votes)
    outcome = _decide(t, config)
    if outcome.decisive or t.distinct_voters < config.quorum_threshold or t.total_weight <= 0:
        return outcome
    best = max(t.weights.values())
    winner = next(v for v in _TIE_BREAK_ORDER if t.weights.get(v, 0.0) == best)
    return ConsensusOutcome(winner.value)


def decision_id(votes: Iterable[Ballot], outcome: ConsensusOutcome) -> str:
    """Stable identifier for an outcome over a specific vote set."""
    ballots = sorted(
        (v.validator_address, VoteValue(v.value).value, float(v.weight)) for v in votes
    )
    return f"{outcome.value}:{canonical_digest({'ballots': ballots})[:16]}"
