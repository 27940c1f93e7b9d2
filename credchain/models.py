from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, Enum, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
    event, func, inspect,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------


class ApplicationStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    AI_CHECKING = "ai-checking"
    UNDER_REVIEW = "under-review"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED = "flagged"
    WITHDRAWN = "withdrawn"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ApplicationStatus.APPROVED, ApplicationStatus.REJECTED, ApplicationStatus.WITHDRAWN,
})


class VoteValue(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    FLAG = "flag"


class RejectionReason(str, enum.Enum):
    FORGED_DOCUMENTS = "forged-documents"
    TAMPERED_DOCUMENTS = "tampered-documents"
    MISSING_INFORMATION = "missing-information"
    ELIGIBILITY_MISMATCH = "eligibility-mismatch"
    INVALID_DOCUMENTS = "invalid-documents"


class IssuanceStatus(str, enum.Enum):
    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"


def _enum_column(enum_cls: type[enum.Enum], length: int = 30) -> Enum:
    # Stored as the hyphenated value, checked on write, no native DB enum.
    return Enum(
        enum_cls, native_enum=False, validate_strings=True, length=length,
        values_callable=lambda members: [m.value for m in members],
    )


# ---------------------------------------------------------------------------
# Applications and their immutable payload
# ---------------------------------------------------------------------------


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[ApplicationStatus] = mapped_column(
        _enum_column(ApplicationStatus), nullable=False, default=ApplicationStatus.SUBMITTED,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    institution: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    applicant_name: Mapped[str] = mapped_column(String(200), nullable=False)
    applicant_email: Mapped[str] = mapped_column(String(300), nullable=False)
    applicant_address: Mapped[str] = mapped_column(String(100), default="")
    student_id: Mapped[str] = mapped_column(String(100), default="")
    graduation_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    gpa: Mapped[float | None] = mapped_column(Float, nullable=True)
    supersedes_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("applications.id"), nullable=True, unique=True)
    # Bumped when a flagged application is reopened; only votes of the current round count.
    review_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    review_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    documents: Mapped[list[Document]] = relationship("Document", back_populates="application", order_by="Document.id")
    analyses: Mapped[list[AIAnalysis]] = relationship("AIAnalysis", back_populates="application", order_by="AIAnalysis.attempt")
    votes: Mapped[list[Vote]] = relationship("Vote", back_populates="application", order_by="Vote.id")
    rejections: Mapped[list[RejectionRecord]] = relationship("RejectionRecord", back_populates="application", order_by="RejectionRecord.id")
    certificate: Mapped[CertificateIssuance | None] = relationship("CertificateIssuance", back_populates="application", uselist=False)
    transitions: Mapped[list[StatusTransition]] = relationship("StatusTransition", back_populates="application", order_by="StatusTransition.id")


# Columns that make up the submission payload; frozen once inserted.
PAYLOAD_FIELDS = (
    "user_id", "title", "institution", "description", "applicant_name",
    "applicant_email", "applicant_address", "student_id", "graduation_date", "gpa",
    "supersedes_id",
)


@event.listens_for(Application, "before_update")
def _freeze_submission_payload(mapper, connection, target: Application) -> None:
    state = inspect(target)
    changed = [f for f in PAYLOAD_FIELDS if state.attrs[f].history.has_changes()]
    if changed:
        raise ValueError(f"Submission payload is immutable (attempted change: {', '.join(changed)})")


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False)
    filename: Mapped[str] = mapped_column(String(300), nullable=False)
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)  # diploma | transcript | id | other
    file_type: Mapped[str] = mapped_column(String(50), default="")
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_hash: Mapped[str] = mapped_column(String(200), default="")
    extracted_text: Mapped[str] = mapped_column(Text, default="")
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    application: Mapped[Application] = relationship("Application", back_populates="documents")


class AIAnalysis(Base):
    __tablename__ = "ai_analyses"
    __table_args__ = (UniqueConstraint("application_id", "attempt", name="uq_analysis_attempt"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    eligibility_match_score: Mapped[float] = mapped_column(Float, nullable=False)
    document_authenticity_score: Mapped[float] = mapped_column(Float, nullable=False)
    confidence_level: Mapped[float] = mapped_column(Float, nullable=False)
    forgery_indicators_json: Mapped[str] = mapped_column(Text, default="[]")
    missing_information_json: Mapped[str] = mapped_column(Text, default="[]")
    ai_recommendation: Mapped[str] = mapped_column(String(50), default="")
    analysis_details_json: Mapped[str] = mapped_column(Text, default="{}")
    prescreen_outcome: Mapped[str] = mapped_column(String(30), default="")  # auto-advance | auto-flag | insufficient
    model: Mapped[str] = mapped_column(String(100), default="")
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    application: Mapped[Application] = relationship("Application", back_populates="analyses")


# ---------------------------------------------------------------------------
# Validators and votes
# ---------------------------------------------------------------------------


class Validator(Base):
    __tablename__ = "validators"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(200), default="")
    stake_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    suspended: Mapped[bool] = mapped_column(Boolean, default=False)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (UniqueConstraint("application_id", "review_round", "validator_address", name="uq_vote_per_validator"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False)
    review_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    validator_address: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[VoteValue] = mapped_column(_enum_column(VoteValue, 10), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    stake_snapshot: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, default="")
    digest: Mapped[str] = mapped_column(String(64), default="")
    cast_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    application: Mapped[Application] = relationship("Application", back_populates="votes")


# ---------------------------------------------------------------------------
# Transition side effects
# ---------------------------------------------------------------------------


class StatusTransition(Base):
    __tablename__ = "status_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False)
    event: Mapped[str] = mapped_column(String(40), nullable=False)
    from_status: Mapped[ApplicationStatus] = mapped_column(_enum_column(ApplicationStatus), nullable=False)
    to_status: Mapped[ApplicationStatus] = mapped_column(_enum_column(ApplicationStatus), nullable=False)
    source_id: Mapped[str] = mapped_column(String(200), default="")
    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    actor: Mapped[str] = mapped_column(String(100), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    application: Mapped[Application] = relationship("Application", back_populates="transitions")


class RejectionRecord(Base):
    __tablename__ = "rejection_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False)
    transition_id: Mapped[int] = mapped_column(Integer, ForeignKey("status_transitions.id"), nullable=False, unique=True)
    rejection_reason: Mapped[RejectionReason] = mapped_column(_enum_column(RejectionReason), nullable=False)
    detailed_analysis: Mapped[str] = mapped_column(Text, default="")
    evidence_json: Mapped[str] = mapped_column(Text, default="{}")
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)  # ai | votes
    can_resubmit: Mapped[bool] = mapped_column(Boolean, nullable=False)
    can_appeal: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    application: Mapped[Application] = relationship("Application", back_populates="rejections")


class CertificateIssuance(Base):
    __tablename__ = "certificate_issuances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False, unique=True)
    transition_id: Mapped[int] = mapped_column(Integer, ForeignKey("status_transitions.id"), nullable=False, unique=True)
    certificate_data_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[IssuanceStatus] = mapped_column(
        _enum_column(IssuanceStatus, 10), nullable=False, default=IssuanceStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default="")
    token_address: Mapped[str] = mapped_column(String(100), default="")
    token_id: Mapped[str] = mapped_column(String(100), default="")
    tx_hash: Mapped[str] = mapped_column(String(100), default="")
    metadata_uri: Mapped[str] = mapped_column(String(500), default="")
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    application: Mapped[Application] = relationship("Application", back_populates="certificate")


# ---------------------------------------------------------------------------
# Applicant-facing records
# ---------------------------------------------------------------------------


class Appeal(Base):
    __tablename__ = "appeals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False)
    rejection_record_id: Mapped[int] = mapped_column(Integer, ForeignKey("rejection_records.id"), nullable=False, unique=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    application_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("applications.id"), nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
