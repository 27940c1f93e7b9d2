"""AI pre-screen gate: decides whether an analyzed application reaches validators."""
from __future__ import annotations

import enum

from credchain.config import EngineConfig
from credchain.models import AIAnalysis
from credchain.utils import json_parse


class PreScreenOutcome(str, enum.Enum):
    AUTO_ADVANCE = "auto-advance"
    AUTO_FLAG = "auto-flag"
    INSUFFICIENT = "insufficient"


def forgery_indicators(analysis: AIAnalysis) -> list[str]:
    raw = json_parse(analysis.forgery_indicators_json, [])
    if not isinstance(raw, list):
        return []
    return [str(i).strip() for i in raw if str(i).strip()]


def evaluate(analysis: AIAnalysis, config: EngineConfig) -> PreScreenOutcome:
    """Route an analysis result.

    Low confidence means the analysis has to be redone, so it is checked
    before anything the analysis claims about the documents.
    """
    if analysis.confidence_level < config.min_confidence:
        return PreScreenOutcome.INSUFFICIENT
    if forgery_indicators(analysis) or analysis.document_authenticity_score < config.min_authenticity:
        return PreScreenOutcome.AUTO_FLAG
    return PreScreenOutcome.AUTO_ADVANCE
