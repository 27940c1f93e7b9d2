from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from credchain import services
from credchain.config import get_config
from credchain.db import get_session, init_db
from credchain.errors import EngineError
from credchain.models import Application, ApplicationStatus, RejectionReason, Validator
from credchain.voting import votes_for

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def credchain_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    get_config()
    yield


mcp = FastMCP(
    "credchain",
    instructions=(
        "credchain verifies educational credentials. Applications are pre-screened "
        "by an AI analysis, then reviewed by stake-weighted validators. "
        "Start with get_stats() for an overview, list_applications(status='under-review') "
        "to find work, get_application(id) for the full dossier, then cast_vote(...)."
    ),
    lifespan=credchain_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("credchain://overview")
def credchain_overview() -> str:
    """Overview of credchain: lifecycle, voting rules, and rejection reasons."""
    config = get_config()
    return json.dumps({
        "system": "credchain - consensus and lifecycle engine for credential verification",
        "statuses": [s.value for s in ApplicationStatus],
        "terminal": ["approved", "rejected", "withdrawn"],
        "voting": {
            "values": ["approve", "reject", "flag"],
            "quorum_threshold": config.quorum_threshold,
            "approval_weight_threshold": config.approval_weight_threshold,
            "flag_weight_threshold": config.flag_weight_threshold,
            "max_voting_window_hours": config.max_voting_window.total_seconds() / 3600,
            "weight_policy": config.weight_policy,
            "rules": (
                "Below quorum the outcome is pending. Otherwise flag wins when the flag weight "
                "fraction reaches its threshold, then approve, then reject at the approval threshold."
            ),
        },
        "rejection_reasons": {
            r.value: config.rejection_policy[r].model_dump() for r in RejectionReason
        },
        "workflow": [
            "1. get_stats() - counts by status.",
            "2. list_applications(status='under-review') - applications open for voting.",
            "3. get_application(id) - payload, documents, AI analysis and current tally.",
            "4. cast_vote(application_id, validator_address, value, reasoning) - one vote per validator.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Applications
# ---------------------------------------------------------------------------


@mcp.tool()
def list_applications(status: str | None = None, user_id: str | None = None, limit: int = 50) -> list[dict] | dict:
    """List credential applications, newest first.

    Args:
        status: Filter by status. Comma-separated from: submitted, ai-checking,
                under-review, approved, rejected, flagged, withdrawn.
        user_id: Only applications submitted by this user.
        limit: Max results (default 50, max 500).
    """
    with _session() as session:
        try:
            items, _ = services.list_applications(
                session, status=status, user_id=user_id, page=1, per_page=max(1, min(limit, 500)),
            )
        except ValueError as exc:
            return {"error": f"Invalid status filter: {exc}"}
        return items


@mcp.tool()
def get_application(application_id: int) -> dict:
    """Get full details for an application: documents, analyses, votes, tally and outcome records."""
    with _session() as session:
        app, err = _get_or_error(session, Application, application_id, "Application")
        return err if err else services.application_detail(app, get_config())


@mcp.tool()
def get_tally(application_id: int) -> dict:
    """Get the current stake-weighted tally and consensus outcome for an application."""
    with _session() as session:
        _, err = _get_or_error(session, Application, application_id, "Application")
        if err:
            return err
        return services.tally_dict(votes_for(session, application_id), get_config())


# ---------------------------------------------------------------------------
# Tools: Voting
# ---------------------------------------------------------------------------


@mcp.tool()
async def cast_vote(application_id: int, validator_address: str, value: str, reasoning: str = "") -> dict:
    """Cast a validator vote on an application under review.

    Args:
        application_id: Application to vote on.
        validator_address: Registered validator address.
        value: One of approve, reject, flag.
        reasoning: Why. Cite the concrete problem (forged signature, missing
                   transcript, ...) when rejecting or flagging.
    """
    with _session() as session:
        try:
            receipt = await services.cast_vote(
                session, application_id, validator_address, value, reasoning, get_config(),
            )
        except ValueError:
            return {"error": f"Invalid vote value {value!r}; use approve, reject or flag"}
        except EngineError as exc:
            return {"error": str(exc), "type": type(exc).__name__}
        status = receipt.transition.status.value if receipt.transition else ApplicationStatus.UNDER_REVIEW.value
        return {
            "application_id": application_id,
            "vote": services.vote_dict(receipt.vote),
            "tally": receipt.tally.as_dict(),
            "outcome": receipt.outcome.value,
            "status": status,
        }


# ---------------------------------------------------------------------------
# Tools: Validators & Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def list_validators() -> list[dict]:
    """List registered validators with stake and current vote weight."""
    config = get_config()
    with _session() as session:
        rows = session.execute(select(Validator).order_by(Validator.address)).scalars().all()
        return [services.validator_dict(v, config.weight_policy) for v in rows]


@mcp.tool()
def get_validator(address: str) -> dict:
    """Get a validator's review statistics (reviews, decided reviews, agreement rate)."""
    with _session() as session:
        try:
            return services.validator_stats(session, address, get_config())
        except EngineError as exc:
            return {"error": str(exc)}


@mcp.tool()
def get_stats() -> dict:
    """Get summary statistics: applications by status, rejections by reason, issuance states."""
    with _session() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the credchain MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
