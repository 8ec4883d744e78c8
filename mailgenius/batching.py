"""Split a job's recipient list into fixed-size batches."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .errors import ValidationError


def coerce_batch_size(batch_size: Any) -> int:
    """Return ``batch_size`` as a positive int; fractions and booleans are rejected."""
    if isinstance(batch_size, bool):
        raise ValidationError(f"Invalid batch size: {batch_size!r}")
    if isinstance(batch_size, int):
        size = batch_size
    elif isinstance(batch_size, float) and batch_size.is_integer():
        size = int(batch_size)
    elif isinstance(batch_size, str) and batch_size.strip().lstrip("+-").isdigit():
        size = int(batch_size)
    else:
        raise ValidationError(f"Invalid batch size: {batch_size!r}")
    if size <= 0:
        raise ValidationError(f"Batch size must be positive, got {size}")
    return size


def split_batches(recipients: Sequence[Any], batch_size: int) -> List[Dict[str, int]]:
    """Return batch descriptors covering ``recipients`` in order.

    Batch ``i`` spans ``[i * batch_size, min((i + 1) * batch_size, len(recipients)))``.
    Each descriptor holds ``batch_index``, ``start_record`` and ``end_record``
    (exclusive). Empty recipient lists and non-positive sizes are rejected.
    """
    size = coerce_batch_size(batch_size)
    total = len(recipients)
    if total == 0:
        raise ValidationError("Recipient list is empty")
    return [
        {
            "batch_index": index,
            "start_record": start,
            "end_record": min(start + size, total),
        }
        for index, start in enumerate(range(0, total, size))
    ]


def batch_id(job_id: str, batch_index: int) -> str:
    return f"{job_id}:{batch_index}"
