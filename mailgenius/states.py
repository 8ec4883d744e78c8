"""Status vocabularies and the job state graph."""

from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import InvalidTransitionError

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_RETRYING = "retrying"
JOB_CANCELLED = "cancelled"

JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED, JOB_RETRYING, JOB_CANCELLED)

JOB_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    JOB_PENDING: frozenset({JOB_PROCESSING, JOB_CANCELLED}),
    JOB_PROCESSING: frozenset({JOB_COMPLETED, JOB_FAILED, JOB_RETRYING, JOB_CANCELLED}),
    JOB_RETRYING: frozenset({JOB_PROCESSING, JOB_CANCELLED}),
    JOB_COMPLETED: frozenset(),
    JOB_FAILED: frozenset(),
    JOB_CANCELLED: frozenset(),
}

TERMINAL_JOB_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED})
CLAIMABLE_JOB_STATUSES = (JOB_PENDING, JOB_RETRYING)

BATCH_PENDING = "pending"
BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
TERMINAL_BATCH_STATUSES = frozenset({BATCH_COMPLETED, BATCH_FAILED})

RECIPIENT_PENDING = "pending"
RECIPIENT_SENT = "sent"
RECIPIENT_RETRYING = "retrying"
RECIPIENT_FAILED = "failed"

RETRY_SCHEDULED = "scheduled"
RETRY_EXECUTING = "executing"
RETRY_SUCCEEDED = "succeeded"
RETRY_EXHAUSTED = "exhausted"
OPEN_RETRY_STATUSES = (RETRY_SCHEDULED, RETRY_EXECUTING)

WORKER_IDLE = "idle"
WORKER_BUSY = "busy"
WORKER_OFFLINE = "offline"

CAMPAIGN_SENDABLE_STATUSES = ("draft", "scheduled")


def check_job_transition(current: str, target: str) -> None:
    """Raise :class:`InvalidTransitionError` unless ``current -> target`` is allowed."""
    if target not in JOB_TRANSITIONS:
        raise InvalidTransitionError(current, target, f"Unknown job status '{target}'")
    if target not in JOB_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_JOB_STATUSES
