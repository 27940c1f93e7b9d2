"""Error taxonomy for the consensus and lifecycle engine.

Every error the engine raises derives from :class:`EngineError` so callers
(API routes, MCP tools) can map them in one place.

- ``ValidationError`` -- the request was rejected synchronously; the caller
  must correct it and may retry.
- ``TransitionError`` -- a race loser or a logic misuse. Always surfaced.
- ``UpstreamUnavailable`` -- an external collaborator could not be reached;
  the application stays in its current non-terminal state.
- ``ConfigurationError`` -- thresholds out of range. Raised at startup only.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""


class NotFound(EngineError):
    def __init__(self, label: str, entity_id: object):
        super().__init__(f"{label} {entity_id} not found")
        self.label = label
        self.entity_id = entity_id


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------


class ValidationError(EngineError):
    pass


class UnknownValidator(ValidationError):
    def __init__(self, address: str):
        super().__init__(f"Unknown validator {address}")
        self.address = address


class NotEligible(ValidationError):
    def __init__(self, address: str, reason: str = ""):
        msg = f"Validator {address} is not eligible to vote"
        super().__init__(f"{msg}: {reason}" if reason else msg)
        self.address = address


class DuplicateVote(ValidationError):
    def __init__(self, application_id: int, address: str):
        super().__init__(f"Validator {address} already voted on application {application_id}")
        self.application_id = application_id
        self.address = address


class ApplicationNotVotable(ValidationError):
    def __init__(self, application_id: int, status: str):
        super().__init__(f"Application {application_id} is not open for voting (status={status})")
        self.application_id = application_id
        self.status = status


class ResubmissionNotAllowed(ValidationError):
    pass


class AppealNotAllowed(ValidationError):
    pass


# ---------------------------------------------------------------------------
# Transition errors
# ---------------------------------------------------------------------------


class TransitionError(EngineError):
    def __init__(self, message: str, application_id: int, status: str, event: str):
        super().__init__(message)
        self.application_id = application_id
        self.status = status
        self.event = event


class InvalidTransition(TransitionError):
    def __init__(self, application_id: int, status: str, event: str):
        super().__init__(
            f"Event {event!r} is not valid for application {application_id} in status {status!r}",
            application_id, status, event,
        )


class AlreadyTerminal(TransitionError):
    def __init__(self, application_id: int, status: str, event: str):
        super().__init__(
            f"Application {application_id} is already terminal ({status!r}); {event!r} rejected",
            application_id, status, event,
        )


# ---------------------------------------------------------------------------
# Collaborator / startup errors
# ---------------------------------------------------------------------------


class UpstreamUnavailable(EngineError):
    """An external collaborator (analysis, ledger) is unreachable."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator} unavailable: {message}")
        self.collaborator = collaborator


class ConfigurationError(EngineError):
    """Invalid engine configuration. Fatal at startup."""
