"""Error taxonomy shared by the workflows and the request boundary."""

from __future__ import annotations


class TriageError(Exception):
    """Base class for errors surfaced to callers with a stable code."""

    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(TriageError):
    """Referenced application or cluster does not exist."""

    code = "not_found"


class PreconditionFailedError(TriageError):
    """Operation requested out of order (e.g. patch before analysis)."""

    code = "precondition_failed"


class ConcurrencyConflictError(TriageError):
    """Another worker already holds the lease for this unit of work."""

    code = "busy"


class UpstreamUnavailableError(TriageError):
    """Log source or reasoning service unreachable, failing or timing out."""

    code = "upstream_unavailable"


class InvalidArtifactError(TriageError):
    """A generated artifact (patch) failed validation."""

    code = "invalid_artifact"


class InputValidationError(TriageError, ValueError):
    """Malformed caller input."""

    code = "validation_error"
