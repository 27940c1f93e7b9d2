"""Pydantic request/response schemas for the credchain API."""
from __future__ import annotations

import re
from datetime import date
from typing import Any

from pydantic import BaseModel, Field, field_validator

from credchain.models import VoteValue

_ADDRESS_RE = re.compile(r"^[A-Za-z0-9_.:-]{3,100}$")


def _check_address(v: str) -> str:
    v = v.strip()
    if not _ADDRESS_RE.match(v):
        raise ValueError("address must be 3-100 characters of letters, digits, '.', ':', '_' or '-'")
    return v


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class DocumentIn(BaseModel):
    filename: str
    document_type: str = "other"
    file_type: str = ""
    file_size: int | None = Field(None, ge=0)
    content_hash: str = ""
    extracted_text: str = ""

    @field_validator("document_type")
    @classmethod
    def known_document_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("diploma", "transcript", "id", "other"):
            raise ValueError("document_type must be one of diploma, transcript, id, other")
        return v


class ApplicationCreate(BaseModel):
    user_id: str
    title: str = Field(..., min_length=1)
    institution: str = Field(..., min_length=1)
    description: str = ""
    applicant_name: str = Field(..., min_length=1)
    applicant_email: str = Field(..., min_length=3)
    applicant_address: str = ""
    student_id: str = ""
    graduation_date: date | None = None
    gpa: float | None = Field(None, ge=0)
    documents: list[DocumentIn] = []


class ResubmitRequest(BaseModel):
    title: str | None = None
    institution: str | None = None
    description: str | None = None
    applicant_name: str | None = None
    applicant_email: str | None = None
    applicant_address: str | None = None
    student_id: str | None = None
    graduation_date: date | None = None
    gpa: float | None = Field(None, ge=0)
    documents: list[DocumentIn] | None = None


class AnalysisIn(BaseModel):
    """Analysis result delivered by an external analysis collaborator."""
    eligibility_match_score: float = Field(..., ge=0, le=1)
    document_authenticity_score: float = Field(..., ge=0, le=1)
    confidence_level: float = Field(..., ge=0, le=1)
    forgery_indicators: list[str] = []
    missing_information: list[str] = []
    ai_recommendation: str = ""
    analysis_details: dict[str, Any] = {}
    model: str = ""


class VoteIn(BaseModel):
    validator_address: str
    value: VoteValue
    reasoning: str = ""

    @field_validator("validator_address")
    @classmethod
    def address_is_well_formed(cls, v: str) -> str:
        return _check_address(v)


class ValidatorIn(BaseModel):
    address: str
    stake_amount: float = Field(..., ge=0)
    display_name: str = ""

    @field_validator("address")
    @classmethod
    def address_is_well_formed(cls, v: str) -> str:
        return _check_address(v)


class SuspendIn(BaseModel):
    suspended: bool = True


class AppealIn(BaseModel):
    reason: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ApplicationOut(BaseModel):
    id: int
    status: str
    user_id: str
    title: str
    institution: str
    applicant_name: str
    supersedes_id: int | None = None
    review_round: int = 1
    created_at: str | None = None
    submitted_at: str | None = None
    updated_at: str | None = None
    review_opened_at: str | None = None


class ApplicationListResponse(BaseModel):
    items: list[ApplicationOut]
    total: int


class TallyOut(BaseModel):
    distinct_voters: int
    total_weight: float
    counts: dict[str, int]
    weights: dict[str, float]
    fractions: dict[str, float]
    outcome: str
    quorum_threshold: int
    approval_weight_threshold: float
    flag_weight_threshold: float


class VoteOut(BaseModel):
    id: int
    application_id: int
    review_round: int = 1
    validator_address: str
    value: str
    weight: float
    stake_snapshot: float
    reasoning: str
    digest: str
    cast_at: str | None = None


class RejectionOut(BaseModel):
    id: int
    application_id: int
    transition_id: int
    rejection_reason: str
    detailed_analysis: str
    evidence: dict[str, Any] = {}
    trigger: str
    can_resubmit: bool
    can_appeal: bool
    created_at: str | None = None


class IssuanceOut(BaseModel):
    id: int
    application_id: int
    status: str
    attempts: int
    last_error: str
    certificate_data: dict[str, Any] = {}
    token_address: str
    token_id: str
    tx_hash: str
    metadata_uri: str
    requested_at: str | None = None
    issued_at: str | None = None


class AnalysisOut(BaseModel):
    id: int
    attempt: int
    eligibility_match_score: float
    document_authenticity_score: float
    confidence_level: float
    forgery_indicators: list[str] = []
    missing_information: list[str] = []
    ai_recommendation: str
    analysis_details: dict[str, Any] = {}
    prescreen_outcome: str
    model: str
    processed_at: str | None = None


class TransitionOut(BaseModel):
    id: int
    event: str
    from_status: str
    to_status: str
    source_id: str
    actor: str
    created_at: str | None = None


class DocumentOut(DocumentIn):
    id: int


class ApplicationDetail(ApplicationOut):
    description: str = ""
    applicant_email: str = ""
    applicant_address: str = ""
    student_id: str = ""
    graduation_date: str | None = None
    gpa: float | None = None
    documents: list[DocumentOut] = []
    analyses: list[AnalysisOut] = []
    votes: list[VoteOut] = []
    tally: TallyOut
    voting_deadline: str | None = None
    rejections: list[RejectionOut] = []
    certificate: IssuanceOut | None = None
    transitions: list[TransitionOut] = []
    allowed_events: list[str] = []


class AnalysisResultOut(BaseModel):
    application_id: int
    status: str
    prescreen_outcome: str
    analysis: AnalysisOut
    rejection: RejectionOut | None = None


class VoteResultOut(BaseModel):
    vote: VoteOut
    tally: dict[str, Any]
    outcome: str
    status: str
    rejection: RejectionOut | None = None
    certificate: IssuanceOut | None = None


class ValidatorOut(BaseModel):
    id: int
    address: str
    display_name: str
    stake_amount: float
    suspended: bool
    weight: float
    registered_at: str | None = None
    updated_at: str | None = None


class ValidatorStatsOut(ValidatorOut):
    total_reviews: int
    decided_reviews: int
    agreement_rate: float | None = None
    votes_by_value: dict[str, int] = {}


class NotificationOut(BaseModel):
    id: int
    user_id: str
    application_id: int | None = None
    event_type: str
    title: str
    message: str
    created_at: str | None = None
    read_at: str | None = None


class StatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    rejections_by_reason: dict[str, int]
    issuance_by_status: dict[str, int]
    validators: int
    votes: int
