"""Exception hierarchy shared by the queue, workers and the HTTP layer."""

from __future__ import annotations

from typing import Optional


class MailGeniusError(RuntimeError):
    """Base class for every error raised by the send queue."""

    code = "error"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class ValidationError(MailGeniusError):
    """Malformed request rejected before any job is created."""

    code = "validation_error"
    status_code = 400


class NoRecipientsError(ValidationError):
    """Campaign resolved to an empty recipient list."""

    code = "no_recipients"


class NotFoundError(MailGeniusError):
    """Requested record does not exist."""

    code = "not_found"
    status_code = 404


class CampaignNotSendableError(MailGeniusError):
    """Campaign cannot be sent in its current status."""

    code = "campaign_not_sendable"
    status_code = 400


class InvalidTransitionError(MailGeniusError):
    """Raised when a status change is not allowed by the state graph."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move from '{current}' to '{target}'")


class ClaimConflictError(MailGeniusError):
    """Another worker claimed the job first.

    Never surfaced to callers: :meth:`JobQueue.claim_next` swallows it and
    moves on to the next candidate.
    """

    code = "claim_conflict"
    status_code = 409


class SendFailure(MailGeniusError):
    """A single recipient could not be delivered."""

    code = "send_failure"
    status_code = 502

    def __init__(self, message: str, *, permanent: bool = False, provider_code: Optional[int] = None):
        self.permanent = permanent
        self.provider_code = provider_code
        super().__init__(message)


class RetryExhaustedError(MailGeniusError):
    """Every retry attempt for a recipient has failed.

    Recorded on the job's failed counters, not raised to API callers.
    """

    code = "retry_exhausted"
    status_code = 500


class RateLimitExceeded(MailGeniusError):
    """The caller must back off until the window resets."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, identifier: str, resource: str, reset_time: float):
        self.identifier = identifier
        self.resource = resource
        self.reset_time = reset_time
        super().__init__(f"Rate limit exceeded for {identifier} on '{resource}'")


class StaleWorkerError(MailGeniusError):
    """A worker missed its heartbeat and lost its claim."""

    code = "stale_worker"
    status_code = 409
