"""Tests for the AI pre-screen gate."""
from __future__ import annotations

from conftest import make_analysis

from credchain.config import EngineConfig
from credchain.gate import PreScreenOutcome, evaluate, forgery_indicators


class TestGate:
    def test_clean_analysis_advances(self):
        assert evaluate(make_analysis(), EngineConfig()) is PreScreenOutcome.AUTO_ADVANCE

    def test_forged_signature_auto_flags(self):
        analysis = make_analysis(confidence=0.95, authenticity=0.3, indicators=["signature-mismatch"])
        assert evaluate(analysis, EngineConfig(min_authenticity=0.5)) is PreScreenOutcome.AUTO_FLAG

    def test_indicator_alone_flags(self):
        analysis = make_analysis(authenticity=0.99, indicators=["font-inconsistency"])
        assert evaluate(analysis, EngineConfig()) is PreScreenOutcome.AUTO_FLAG

    def test_low_authenticity_alone_flags(self):
        analysis = make_analysis(authenticity=0.49)
        assert evaluate(analysis, EngineConfig()) is PreScreenOutcome.AUTO_FLAG

    def test_low_confidence_is_insufficient(self):
        analysis = make_analysis(confidence=0.4)
        assert evaluate(analysis, EngineConfig(min_confidence=0.6)) is PreScreenOutcome.INSUFFICIENT

    def test_insufficient_checked_before_indicators(self):
        analysis = make_analysis(confidence=0.4, authenticity=0.1, indicators=["signature-mismatch"])
        assert evaluate(analysis, EngineConfig()) is PreScreenOutcome.INSUFFICIENT

    def test_boundaries_are_inclusive(self):
        analysis = make_analysis(confidence=0.6, authenticity=0.5)
        assert evaluate(analysis, EngineConfig()) is PreScreenOutcome.AUTO_ADVANCE


class TestForgeryIndicators:
    def test_blank_entries_dropped(self):
        analysis = make_analysis(indicators=["  ", "seal-missing"])
        assert forgery_indicators(analysis) == ["seal-missing"]

    def test_malformed_json(self):
        analysis = make_analysis()
        analysis.forgery_indicators_json = "not json"
        assert forgery_indicators(analysis) == []

    def test_non_list_json(self):
        analysis = make_analysis()
        analysis.forgery_indicators_json = '{"a": 1}'
        assert forgery_indicators(analysis) == []
