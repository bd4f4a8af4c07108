"""Error taxonomy shared by the sync, reconciliation and exclusion services.

Every error carries a machine-readable ``kind`` and the HTTP status the admin
surface answers with, so routes can translate failures without knowing which
service raised them.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for failures surfaced to admin callers."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"error": self.kind, "description": self.message}


class UpstreamError(MirrorError):
    """The upstream catalog could not be reached or answered with an error."""

    kind = "transient_upstream"
    status_code = 502


class SyncConflictError(MirrorError):
    """A sync pass was requested while another one is in flight."""

    kind = "conflict"
    status_code = 409


class SyncNotRunningError(MirrorError):
    kind = "not_running"
    status_code = 400


class ReconciliationConflictError(MirrorError):
    """A transfer or discard is already running for the same orphan."""

    kind = "conflict"
    status_code = 409


class ReconciliationAmbiguityError(MirrorError):
    """No single exact match exists; the orphan is left for a manual decision."""

    kind = "ambiguous"
    status_code = 409


class ValidationFailure(MirrorError, ValueError):
    """Malformed input rejected before any state change."""

    kind = "validation"
    status_code = 400


class WebhookDisabledError(MirrorError):
    kind = "webhook_disabled"
    status_code = 403


class NotFoundError(MirrorError):
    kind = "not_found"
    status_code = 404


class SyncAborted(Exception):
    """Raised inside the engine when the cooperative abort flag is set."""
