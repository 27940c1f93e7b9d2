"""Tests for the LLM pre-screen: dossier, response validation, client parsing."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_application

from credchain.analysis import (
    DEFAULT_ANALYSIS_PROMPT,
    DEFAULT_MAX_TOKENS,
    JSON_ONLY_SUFFIX,
    AnalysisCallError,
    LLMClient,
    analyze_application,
    build_dossier,
    validate_response,
)
from credchain.models import Document


def _mock_client(payload) -> MagicMock:
    client = MagicMock()
    client.model = "test-model"
    client.call = AsyncMock(return_value=payload)
    return client


class TestBuildDossier:
    def test_includes_claim_and_documents(self, session):
        app = make_application(session)
        dossier = build_dossier(app, list(app.documents))
        assert dossier.startswith(f"APPLICATION: #{app.id}")
        assert "INSTITUTION: TU Munich" in dossier
        assert "GPA: 1.7" in dossier
        assert "DIPLOMA | diploma.pdf | application/pdf | 1024 bytes" in dossier
        assert "awards Ada Lovelace" in dossier

    def test_no_documents(self, session):
        app = make_application(session)
        assert "NO DOCUMENTS UPLOADED" in build_dossier(app, [])

    def test_text_is_capped(self, session):
        app = make_application(session)
        doc = Document(application_id=app.id, filename="t.pdf", document_type="transcript",
                       extracted_text="x" * 9000)
        assert "x" * 5001 not in build_dossier(app, [doc])

    def test_missing_text_marked(self, session):
        app = make_application(session)
        doc = Document(application_id=app.id, filename="scan.png", document_type="id", extracted_text="")
        assert "(no text extracted)" in build_dossier(app, [doc])


class TestValidateResponse:
    def test_scores_clamped(self):
        v = validate_response({
            "eligibility_match_score": 1.7,
            "document_authenticity_score": -0.2,
            "confidence_level": "0.8",
        })
        assert v["eligibility_match_score"] == 1.0
        assert v["document_authenticity_score"] == 0.0
        assert v["confidence_level"] == 0.8

    def test_garbage_is_conservative(self):
        v = validate_response({"confidence_level": "high", "document_authenticity_score": float("nan")})
        assert v["confidence_level"] == 0.0
        assert v["document_authenticity_score"] == 0.0
        assert v["eligibility_match_score"] == 0.0
        assert v["recommendation"] == "review"

    def test_lists_normalized(self):
        v = validate_response({
            "forgery_indicators": ["Signature-Mismatch", "signature-mismatch", " ", None],
            "missing_information": "Transcript",
        })
        assert v["forgery_indicators"] == ["signature-mismatch"]
        assert v["missing_information"] == ["transcript"]

    def test_recommendation(self):
        assert validate_response({"recommendation": "REJECT"})["recommendation"] == "reject"
        assert validate_response({"recommendation": "sure"})["recommendation"] == "review"


class TestAnalyzeApplication:
    @pytest.mark.asyncio
    async def test_builds_unsaved_row(self, session):
        app = make_application(session)
        client = _mock_client({
            "eligibility_match_score": 0.9,
            "document_authenticity_score": 0.3,
            "confidence_level": 0.95,
            "forgery_indicators": ["signature-mismatch"],
            "missing_information": [],
            "recommendation": "reject",
            "summary": "Signature does not match the registrar's.",
        })
        analysis = await analyze_application(app, list(app.documents), client, attempt=2)
        assert analysis.id is None
        assert analysis.application_id == app.id
        assert analysis.attempt == 2
        assert analysis.document_authenticity_score == 0.3
        assert json.loads(analysis.forgery_indicators_json) == ["signature-mismatch"]
        assert analysis.ai_recommendation == "reject"
        assert analysis.model == "test-model"
        assert json.loads(analysis.analysis_details_json)["documents"] == 1
        system, user = client.call.call_args.args
        assert "Respond with ONLY valid JSON" in system
        assert "TU Munich" in user

    @pytest.mark.asyncio
    async def test_custom_prompt(self, session):
        app = make_application(session)
        client = _mock_client({})
        await analyze_application(app, [], client, prompt="Be strict.")
        assert client.call.call_args.args[0] == "Be strict."

    @pytest.mark.asyncio
    async def test_call_error_propagates(self, session):
        app = make_application(session)
        client = _mock_client({})
        client.call.side_effect = AnalysisCallError("down", retryable=True)
        with pytest.raises(AnalysisCallError):
            await analyze_application(app, [], client)


class TestLLMClient:
    def _anthropic(self, text: str) -> LLMClient:
        client = LLMClient(provider="anthropic", api_key="test-key")
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(text=text)])
        )
        return client

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="carrier-pigeon")

    @pytest.mark.asyncio
    async def test_fenced_json(self):
        client = self._anthropic('```json\n{"confidence_level": 0.7}\n```')
        assert await client.call("sys", "user") == {"confidence_level": 0.7}

    @pytest.mark.asyncio
    async def test_invalid_json_not_retryable(self):
        client = self._anthropic("I cannot help with that")
        with pytest.raises(AnalysisCallError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_non_object_not_retryable(self):
        client = self._anthropic("[1, 2, 3]")
        with pytest.raises(AnalysisCallError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_api_failure_retryable(self):
        client = self._anthropic("{}")
        client._client.messages.create.side_effect = RuntimeError("connection reset")
        with pytest.raises(AnalysisCallError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_request_settings(self):
        client = self._anthropic('{"confidence_level": 0.7}')
        await client.call(DEFAULT_ANALYSIS_PROMPT, "dossier")
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["max_tokens"] == DEFAULT_MAX_TOKENS
        assert kwargs["temperature"] == 0.0
        assert kwargs["system"].endswith(JSON_ONLY_SUFFIX)
        assert kwargs["system"].startswith("You are pre-screening")

    def test_max_tokens_configurable(self, monkeypatch):
        monkeypatch.setenv("LLM_MAX_TOKENS", "300")
        assert LLMClient(provider="anthropic", api_key="test-key").max_tokens == 300
        assert LLMClient(provider="anthropic", api_key="test-key", max_tokens=512).max_tokens == 512

    @pytest.mark.asyncio
    async def test_truncated_answer_not_retryable(self):
        client = self._anthropic('{"confidence_level": 0.7, "forgery_indi')
        client._client.messages.create.return_value.stop_reason = "max_tokens"
        with pytest.raises(AnalysisCallError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retryable is False
        assert "truncated" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_openai_request(self):
        client = LLMClient(provider="openai", api_key="test-key", max_tokens=256)
        client._client = MagicMock()
        message = SimpleNamespace(content='{"confidence_level": 0.4}')
        client._client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])
        )
        assert await client.call("sys", "user") == {"confidence_level": 0.4}
        kwargs = client._client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 256
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0]["content"] == f"sys\n\n{JSON_ONLY_SUFFIX}"
