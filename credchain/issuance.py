"""Certificate issuance: request construction and bounded-retry submission.

The issuance request row is created inside the ``consensus-approve``
transition (see :mod:`credchain.lifecycle`), so an approved application has
exactly one request. Submission to the ledger happens afterwards, outside the
voting critical section:

- ``pending`` -- waiting for (another) submission attempt.
- ``issued``  -- the ledger returned token coordinates. Final.
- ``failed``  -- attempts exhausted or a non-retryable ledger error; needs
  manual intervention (:func:`rearm` puts it back to ``pending``).

Retries back off exponentially: ``backoff * 2 ** (attempt - 1)`` seconds.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import threading
from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from credchain.config import EngineConfig
from credchain.errors import NotFound, ValidationError
from credchain.ledger import LedgerCallError, LedgerClient
from credchain.models import (
    Application, CertificateIssuance, IssuanceStatus, StatusTransition, Vote, VoteValue,
)
from credchain.utils import isoformat, json_parse, utcnow

log = logging.getLogger(__name__)

# Application ids with a submission currently running in this process.
_inflight: set[int] = set()
_inflight_lock = threading.Lock()


def build_request(
    application: Application, transition: StatusTransition, votes: Iterable[Vote],
) -> CertificateIssuance:
    """Build the (unsaved) issuance request for an approved application."""
    approving = sorted(
        (v for v in votes if VoteValue(v.value) is VoteValue.APPROVE),
        key=lambda v: v.validator_address,
    )
    data = {
        "application_id": application.id,
        "title": application.title,
        "institution": application.institution,
        "applicant_name": application.applicant_name,
        "recipient_address": application.applicant_address,
        "student_id": application.student_id,
        "graduation_date": application.graduation_date.isoformat() if application.graduation_date else None,
        "gpa": application.gpa,
        "approved_at": isoformat(transition.created_at) or isoformat(utcnow()),
        "approving_validators": [v.validator_address for v in approving],
        "approval_weight": math.fsum(v.weight for v in approving),
    }
    return CertificateIssuance(
        application_id=application.id,
        transition_id=transition.id,
        certificate_data_json=json.dumps(data, sort_keys=True),
        status=IssuanceStatus.PENDING,
        attempts=0,
    )


def _get_issuance(session: Session, application_id: int) -> CertificateIssuance:
    issuance = session.execute(
        select(CertificateIssuance).where(CertificateIssuance.application_id == application_id)
    ).scalars().first()
    if issuance is None:
        raise NotFound("Certificate issuance for application", application_id)
    return issuance


def _claim(application_id: int) -> bool:
    with _inflight_lock:
        if application_id in _inflight:
            return False
        _inflight.add(application_id)
        return True


def _release(application_id: int) -> None:
    with _inflight_lock:
        _inflight.discard(application_id)


async def submit_issuance(
    session: Session,
    application_id: int,
    client: LedgerClient,
    config: EngineConfig,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> CertificateIssuance:
    """Drive a pending issuance to ``issued`` or ``failed``.

    Commits after every attempt so the attempt counter survives a crash.
    Already-issued and failed requests are returned unchanged, as is a
    request another task in this process is currently submitting.
    """
    issuance = _get_issuance(session, application_id)
    if issuance.status is not IssuanceStatus.PENDING:
        return issuance
    if not _claim(application_id):
        log.info("Issuance for application %s already in flight", application_id)
        return issuance

    try:
        payload = json_parse(issuance.certificate_data_json)
        key = f"certificate:{application_id}:{issuance.transition_id}"
        while issuance.attempts < config.max_issuance_attempts:
            issuance.attempts += 1
            attempt = issuance.attempts
            session.commit()
            try:
                receipt = await client.submit(payload, key)
            except LedgerCallError as exc:
                issuance.last_error = str(exc)
                if not exc.retryable or attempt >= config.max_issuance_attempts:
                    issuance.status = IssuanceStatus.FAILED
                    session.commit()
                    log.warning("Issuance for application %s failed after %d attempt(s): %s",
                                application_id, attempt, exc)
                    return issuance
                session.commit()
                delay = config.issuance_backoff_seconds * 2 ** (attempt - 1)
                log.warning("Issuance attempt %d for application %s failed, retrying in %.1fs: %s",
                            attempt, application_id, delay, exc)
                await sleep(delay)
                continue

            issuance.status = IssuanceStatus.ISSUED
            issuance.token_address = receipt.token_address
            issuance.token_id = receipt.token_id
            issuance.tx_hash = receipt.tx_hash
            issuance.metadata_uri = receipt.metadata_uri
            issuance.last_error = ""
            issuance.issued_at = utcnow()
            session.commit()
            log.info("Issued certificate for application %s (token %s, tx %s)",
                     application_id, receipt.token_id, receipt.tx_hash)
            return issuance

        # Attempts were already used up before this call.
        issuance.status = IssuanceStatus.FAILED
        session.commit()
        return issuance
    finally:
        _release(application_id)


def rearm(session: Session, application_id: int) -> CertificateIssuance:
    """Reset a failed issuance to ``pending`` with its attempt counter reset (caller must commit)."""
    issuance = _get_issuance(session, application_id)
    if issuance.status is IssuanceStatus.ISSUED:
        raise ValidationError(f"Certificate for application {application_id} is already issued")
    issuance.status = IssuanceStatus.PENDING
    issuance.attempts = 0
    log.info("Re-armed issuance for application %s", application_id)
    return issuance
