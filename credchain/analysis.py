"""Analysis collaborator: LLM-backed document pre-screen.

Architecture
------------
The application payload and the extracted text of its documents are folded
into a single dossier and sent to the LLM with :data:`DEFAULT_ANALYSIS_PROMPT`.
The model answers with three scores and two lists:

- ``eligibility_match_score``     -- does the evidence support the credential claimed?
- ``document_authenticity_score`` -- how genuine do the documents look?
- ``confidence_level``            -- how much the model trusts its own reading.
- ``forgery_indicators``          -- concrete indicator types (empty when none).
- ``missing_information``         -- required items the submission lacks.

Scores are clamped to ``[0, 1]`` and malformed fields fall back to the
most conservative value, so a garbled answer ends up ``insufficient`` at the
gate rather than advancing. Routing is not decided here; see
:mod:`credchain.gate`.
"""
from __future__ import annotations

import json
import logging
import os
import re
from datetime import UTC, datetime
from typing import Any

from credchain.models import AIAnalysis, Application, Document

log = logging.getLogger(__name__)


class AnalysisCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Default prompt
# ---------------------------------------------------------------------------

DEFAULT_ANALYSIS_PROMPT = """\
You are pre-screening an educational credential application before it is \
reviewed by human validators.

You receive the applicant's claim (credential title, institution, dates, GPA) \
and the text extracted from each uploaded document. Assess:
- Eligibility: do the documents support the credential being claimed?
- Authenticity: layout, wording, dates, seals and signatures consistent with \
a genuine document from this institution?
- Completeness: is anything required missing (diploma, transcript, ID)?

Report forgery indicators as short lowercase types, e.g. "signature-mismatch", \
"font-inconsistency", "metadata-edited", "seal-missing", "date-conflict". \
Report an empty list when there are none. Do not speculate: if the text is \
too thin to judge, lower your confidence instead.

Respond with ONLY valid JSON:
{
  "eligibility_match_score": <float 0.0-1.0>,
  "document_authenticity_score": <float 0.0-1.0>,
  "confidence_level": <float 0.0-1.0>,
  "forgery_indicators": ["<indicator type>", ...],
  "missing_information": ["<missing item>", ...],
  "recommendation": "<approve|review|reject>",
  "summary": "<2-3 sentences>"
}
"""

VALID_RECOMMENDATIONS = {"approve", "review", "reject"}

# Appended to whatever system prompt is in use, custom prompts included.
JSON_ONLY_SUFFIX = (
    "Answer with a single JSON object and nothing else: no prose, no markdown."
)

# The answer object is a few hundred tokens.
DEFAULT_MAX_TOKENS = 1024
DEFAULT_TIMEOUT_SECONDS = 60.0


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Async JSON-answering LLM client for the pre-screen (Anthropic or OpenAI).

    Every call is sent at ``temperature`` (0 by default) with
    :data:`JSON_ONLY_SUFFIX` appended to the system prompt. An answer cut off
    at ``max_tokens`` is refused instead of being parsed as a partial object.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.0,
        timeout: float | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens or int(os.environ.get("LLM_MAX_TOKENS", DEFAULT_MAX_TOKENS))
        self.temperature = temperature
        self.timeout = timeout or float(os.environ.get("LLM_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"),
                timeout=self.timeout,
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {"timeout": self.timeout}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return the parsed JSON object."""
        system = f"{system.rstrip()}\n\n{JSON_ONLY_SUFFIX}"
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                truncated = getattr(response, "stop_reason", None) == "max_tokens"
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                choice = response.choices[0]
                truncated = getattr(choice, "finish_reason", None) == "length"
                text = choice.message.content or "{}"
        except AnalysisCallError:
            raise
        except Exception as exc:
            raise AnalysisCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        if truncated:
            raise AnalysisCallError(
                f"LLM answer truncated at {self.max_tokens} tokens", retryable=False,
            )
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise AnalysisCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc
        if not isinstance(parsed, dict):
            raise AnalysisCallError("LLM response is not a JSON object", retryable=False)
        return parsed


# ---------------------------------------------------------------------------
# Dossier
# ---------------------------------------------------------------------------

# (label, attribute_name)
_APPLICATION_FIELDS: list[tuple[str, str]] = [
    ("CREDENTIAL", "title"),
    ("INSTITUTION", "institution"),
    ("APPLICANT", "applicant_name"),
    ("STUDENT ID", "student_id"),
    ("GRADUATION DATE", "graduation_date"),
    ("GPA", "gpa"),
    ("DESCRIPTION", "description"),
]

_MAX_DOCUMENT_TEXT = 5000


def build_dossier(application: Application, documents: list[Document]) -> str:
    """Assemble the claim and per-document text for the analysis call."""
    sections: list[str] = [f"APPLICATION: #{application.id}"]
    for label, attr in _APPLICATION_FIELDS:
        val = getattr(application, attr, None)
        if val not in (None, ""):
            sections.append(f"{label}: {val}")

    if not documents:
        sections.append("\nNO DOCUMENTS UPLOADED")
    for doc in documents:
        meta = [doc.document_type.upper(), doc.filename]
        if doc.file_type:
            meta.append(doc.file_type)
        if doc.file_size:
            meta.append(f"{doc.file_size} bytes")
        sections.append(f"\n--- DOCUMENT: {' | '.join(meta)} ---")
        sections.append((doc.extracted_text or "(no text extracted)")[:_MAX_DOCUMENT_TEXT])
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Response validation
# ---------------------------------------------------------------------------


def _clamp_score(val: Any, name: str) -> float:
    """Coerce to a float in [0, 1]; unusable values become 0.0."""
    try:
        score = float(val)
    except (TypeError, ValueError):
        log.warning("Unusable %s %r, defaulting to 0.0", name, val)
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(0.0, min(1.0, score))


def _string_list(val: Any, limit: int = 20) -> list[str]:
    if isinstance(val, str):
        val = [val]
    if not isinstance(val, list):
        return []
    items = [str(v).strip().lower() for v in val if v is not None and str(v).strip()]
    return list(dict.fromkeys(items))[:limit]


def validate_response(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate and normalize the LLM response."""
    recommendation = str(raw.get("recommendation", "review")).strip().lower()
    if recommendation not in VALID_RECOMMENDATIONS:
        recommendation = "review"
    return {
        "eligibility_match_score": _clamp_score(raw.get("eligibility_match_score"), "eligibility_match_score"),
        "document_authenticity_score": _clamp_score(raw.get("document_authenticity_score"), "document_authenticity_score"),
        "confidence_level": _clamp_score(raw.get("confidence_level"), "confidence_level"),
        "forgery_indicators": _string_list(raw.get("forgery_indicators")),
        "missing_information": _string_list(raw.get("missing_information")),
        "recommendation": recommendation,
        "summary": str(raw.get("summary", "")),
    }


async def analyze_application(
    application: Application,
    documents: list[Document],
    client: LLMClient,
    attempt: int = 1,
    prompt: str | None = None,
) -> AIAnalysis:
    """Run the analysis call and return an (unsaved) :class:`AIAnalysis`."""
    dossier = build_dossier(application, documents)
    raw = await client.call(prompt or DEFAULT_ANALYSIS_PROMPT, dossier)
    v = validate_response(raw)
    return AIAnalysis(
        application_id=application.id,
        attempt=attempt,
        eligibility_match_score=v["eligibility_match_score"],
        document_authenticity_score=v["document_authenticity_score"],
        confidence_level=v["confidence_level"],
        forgery_indicators_json=json.dumps(v["forgery_indicators"]),
        missing_information_json=json.dumps(v["missing_information"]),
        ai_recommendation=v["recommendation"],
        analysis_details_json=json.dumps({"summary": v["summary"], "documents": len(documents)}),
        model=client.model,
        processed_at=datetime.now(UTC),
    )
