"""Validator registry: identity, stake, and derived vote weight.

Vote weight is a monotonic function of stake, fixed per deployment:

- ``sqrt``   -- ``weight = sqrt(stake)``; bounds the influence of large stakes.
- ``linear`` -- ``weight = stake``.

The voting path only reads from the registry. Registration, stake changes
and suspension are administrative operations; they never touch votes that
were already cast (each vote carries its own weight snapshot).
"""
from __future__ import annotations

import logging
import math

from sqlalchemy import select
from sqlalchemy.orm import Session

from credchain.errors import UnknownValidator
from credchain.models import Validator
from credchain.utils import utcnow

log = logging.getLogger(__name__)

WEIGHT_POLICIES = ("sqrt", "linear")


def compute_weight(stake_amount: float, policy: str = "sqrt") -> float:
    """Map a stake to a vote weight under *policy*."""
    stake = max(0.0, float(stake_amount))
    if policy == "sqrt":
        return math.sqrt(stake)
    if policy == "linear":
        return stake
    raise ValueError(f"Unknown weight policy: {policy!r}")


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


class ValidatorRegistry:
    """Read-side view over registered validators."""

    def __init__(self, session: Session, weight_policy: str = "sqrt"):
        if weight_policy not in WEIGHT_POLICIES:
            raise ValueError(f"Unknown weight policy: {weight_policy!r}")
        self.session = session
        self.weight_policy = weight_policy

    def get(self, address: str) -> Validator | None:
        return self.session.execute(
            select(Validator).where(Validator.address == normalize_address(address))
        ).scalars().first()

    def weight_of(self, address: str) -> float:
        validator = self.get(address)
        if validator is None:
            raise UnknownValidator(address)
        return compute_weight(validator.stake_amount, self.weight_policy)

    def is_eligible(self, address: str) -> bool:
        validator = self.get(address)
        if validator is None or validator.suspended:
            return False
        return validator.stake_amount > 0


# ---------------------------------------------------------------------------
# Administrative operations (outside the voting path)
# ---------------------------------------------------------------------------


def register_validator(
    session: Session, address: str, stake_amount: float, display_name: str = "",
) -> Validator:
    """Create a validator or update its stake (caller must commit)."""
    if stake_amount < 0:
        raise ValueError("stake_amount must not be negative")
    address = normalize_address(address)
    if not address:
        raise ValueError("address is required")
    validator = session.execute(
        select(Validator).where(Validator.address == address)
    ).scalars().first()
    if validator is None:
        validator = Validator(address=address, stake_amount=stake_amount, display_name=display_name)
        session.add(validator)
        log.info("Registered validator %s with stake %.4f", address, stake_amount)
    else:
        log.info("Validator %s stake %.4f -> %.4f", address, validator.stake_amount, stake_amount)
        validator.stake_amount = stake_amount
        if display_name:
            validator.display_name = display_name
        validator.updated_at = utcnow()
    return validator


def set_suspended(session: Session, address: str, suspended: bool) -> Validator:
    validator = session.execute(
        select(Validator).where(Validator.address == normalize_address(address))
    ).scalars().first()
    if validator is None:
        raise UnknownValidator(address)
    validator.suspended = suspended
    validator.updated_at = utcnow()
    log.info("Validator %s %s", validator.address, "suspended" if suspended else "reinstated")
    return validator
