from __future__ import annotations

from typing import Iterable, Optional

from dcaengine.core.config import DEFAULT_PERMANENT_REASONS, DEFAULT_TRANSIENT_REASONS


class ExecutionFailure(Exception):
    transient: bool = True

    def __init__(self, reason: str, *, order_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.order_id = order_id


class TransientExecutionFailure(ExecutionFailure):
    transient = True


class PermanentExecutionFailure(ExecutionFailure):
    transient = False


def is_transient(
    reason: str,
    transient_markers: Optional[Iterable[str]] = None,
    permanent_markers: Optional[Iterable[str]] = None,
) -> bool:
    """
    Classify a rejection reason by substring match (case-insensitive).
    A transient marker wins over a permanent one; unknown reasons are
    treated as transient.
    """
    text = (reason or "").lower()
    t_markers = DEFAULT_TRANSIENT_REASONS if transient_markers is None else transient_markers
    p_markers = DEFAULT_PERMANENT_REASONS if permanent_markers is None else permanent_markers

    if any(m.lower() in text for m in t_markers if m):
        return True
    if any(m.lower() in text for m in p_markers if m):
        return False
    return True


def failure_from_reason(
    reason: str,
    *,
    order_id: Optional[str] = None,
    transient_markers: Optional[Iterable[str]] = None,
    permanent_markers: Optional[Iterable[str]] = None,
) -> ExecutionFailure:
    if is_transient(reason, transient_markers, permanent_markers):
        return TransientExecutionFailure(reason, order_id=order_id)
    return PermanentExecutionFailure(reason, order_id=order_id)
