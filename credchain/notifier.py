"""Best-effort applicant notifications.

Called after a transition has committed. A failure here is logged and rolled
back; it never undoes or blocks the transition that triggered it.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credchain.models import ApplicationStatus, Notification

log = logging.getLogger(__name__)

_STATUS_MESSAGES: dict[ApplicationStatus, tuple[str, str]] = {
    ApplicationStatus.AI_CHECKING: ("Application received", "Your documents are being analyzed."),
    ApplicationStatus.UNDER_REVIEW: ("Under review", "Your application is now open for validator review."),
    ApplicationStatus.APPROVED: ("Application approved", "Your credential was approved; the certificate is being issued."),
    ApplicationStatus.REJECTED: ("Application rejected", "Your application was rejected. See the rejection details for next steps."),
    ApplicationStatus.FLAGGED: ("Application flagged", "Your application was flagged for further investigation."),
    ApplicationStatus.WITHDRAWN: ("Application withdrawn", "Your application was withdrawn."),
}


def notify(
    session: Session,
    user_id: str,
    event_type: str,
    application_id: int | None = None,
    title: str = "",
    message: str = "",
) -> Notification | None:
    """Write a notification row and commit it. Returns ``None`` on failure."""
    note = Notification(
        user_id=user_id, application_id=application_id,
        event_type=event_type, title=title, message=message,
    )
    try:
        session.add(note)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.warning("Notification %s for user %s failed: %s", event_type, user_id, exc)
        return None
    return note


def notify_status(session: Session, user_id: str, application_id: int, status: ApplicationStatus) -> Notification | None:
    title, message = _STATUS_MESSAGES.get(status, ("Status changed", f"Your application is now {status.value}."))
    return notify(session, user_id, f"status:{status.value}", application_id, title, message)
