"""Tests for the MCP tool functions, called directly against the test database."""
from __future__ import annotations

import json

import pytest
from conftest import make_application

from credchain import mcp_server
from credchain.models import ApplicationStatus

S = ApplicationStatus


@pytest.fixture(autouse=True)
def wired(SessionLocal, config, monkeypatch):
    monkeypatch.setattr(mcp_server, "get_session", SessionLocal)
    monkeypatch.setattr(mcp_server, "get_config", lambda: config)


class TestApplicationTools:
    def test_list_and_get(self, session):
        app = make_application(session, S.UNDER_REVIEW)
        make_application(session)
        items = mcp_server.list_applications(status="under-review")
        assert [i["id"] for i in items] == [app.id]
        detail = mcp_server.get_application(app.id)
        assert detail["institution"] == "TU Munich"
        assert detail["tally"]["outcome"] == "pending"

    def test_errors_are_returned(self):
        assert "error" in mcp_server.list_applications(status="bogus")
        assert mcp_server.get_application(404) == {"error": "Application 404 not found"}
        assert "error" in mcp_server.get_tally(404)


class TestVotingTools:
    @pytest.mark.asyncio
    async def test_cast_vote(self, session, validators):
        app = make_application(session, S.UNDER_REVIEW)
        result = await mcp_server.cast_vote(app.id, "0xaaa", "approve", "matches registrar records")
        assert result["outcome"] == "pending"
        assert result["status"] == "under-review"
        assert result["tally"]["distinct_voters"] == 1
        assert mcp_server.get_tally(app.id)["total_weight"] == 2.0

    @pytest.mark.asyncio
    async def test_cast_vote_errors(self, session, validators):
        app = make_application(session, S.UNDER_REVIEW)
        assert "Invalid vote value" in (await mcp_server.cast_vote(app.id, "0xaaa", "maybe"))["error"]
        await mcp_server.cast_vote(app.id, "0xaaa", "approve")
        dup = await mcp_server.cast_vote(app.id, "0xaaa", "flag")
        assert dup["type"] == "DuplicateVote"


class TestRegistryTools:
    def test_validators_and_stats(self, session, validators):
        listed = mcp_server.list_validators()
        assert [v["address"] for v in listed] == ["0xaaa", "0xbbb", "0xccc", "0xddd"]
        assert mcp_server.get_validator("0xaaa")["weight"] == 2.0
        assert "error" in mcp_server.get_validator("0xnobody")
        assert mcp_server.get_stats()["validators"] == 4

    def test_overview_resource(self):
        overview = json.loads(mcp_server.credchain_overview())
        assert overview["voting"]["quorum_threshold"] == 3
        assert overview["rejection_reasons"]["forged-documents"] == {"can_resubmit": False, "can_appeal": True}
