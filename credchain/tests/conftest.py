"""Shared fixtures: in-memory database, default config, seeded validators."""
from __future__ import annotations

import json
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from credchain.config import EngineConfig
from credchain.models import AIAnalysis, Application, ApplicationStatus, Base, Document
from credchain.registry import register_validator
from credchain.utils import utcnow


@pytest.fixture()
def engine():
    """In-memory SQLite shared across connections via StaticPool."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def SessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def file_sessions(tmp_path):
    """Session factory on a file-backed SQLite database, for multi-threaded tests."""
    eng = create_engine(f"sqlite:///{tmp_path / 'credchain.db'}", connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(eng)
    yield sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    eng.dispose()


@pytest.fixture()
def session(SessionLocal) -> Session:
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def config() -> EngineConfig:
    return EngineConfig(issuance_backoff_seconds=0.0, sweep_interval_seconds=0.0)


@pytest.fixture()
def validators(session: Session) -> dict[str, str]:
    """A(weight 2), B(weight 1), C(weight 1), D(weight 1) under the sqrt policy."""
    addresses = {"A": "0xaaa", "B": "0xbbb", "C": "0xccc", "D": "0xddd"}
    for name, address in addresses.items():
        register_validator(session, address, 4.0 if name == "A" else 1.0, display_name=f"Validator {name}")
    session.commit()
    return addresses


def make_application(
    session: Session,
    status: ApplicationStatus = ApplicationStatus.SUBMITTED,
    **overrides,
) -> Application:
    """Insert an application directly in *status* (bypasses the lifecycle)."""
    fields = dict(
        user_id="user-1", title="BSc Computer Science", institution="TU Munich",
        description="Bachelor degree", applicant_name="Ada Lovelace",
        applicant_email="ada@example.org", applicant_address="0xada",
        student_id="S-123", graduation_date=date(2023, 7, 15), gpa=1.7,
    )
    fields.update(overrides)
    app = Application(status=status, submitted_at=utcnow(), **fields)
    if status is ApplicationStatus.UNDER_REVIEW:
        app.review_opened_at = utcnow()
    session.add(app)
    session.flush()
    session.add(Document(
        application_id=app.id, filename="diploma.pdf", document_type="diploma",
        file_type="application/pdf", file_size=1024, content_hash="bafy-diploma",
        extracted_text="Technische Universitaet Muenchen awards Ada Lovelace the degree BSc Computer Science.",
    ))
    session.commit()
    return app


def make_analysis(
    confidence: float = 0.9,
    authenticity: float = 0.9,
    eligibility: float = 0.9,
    indicators: list[str] | None = None,
    missing: list[str] | None = None,
) -> AIAnalysis:
    return AIAnalysis(
        eligibility_match_score=eligibility,
        document_authenticity_score=authenticity,
        confidence_level=confidence,
        forgery_indicators_json=json.dumps(indicators or []),
        missing_information_json=json.dumps(missing or []),
        ai_recommendation="review",
    )
