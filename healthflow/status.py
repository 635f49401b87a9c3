from __future__ import annotations

from .models import AnalysisInvocationResult, ProcessingStatus

_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.PROCESSING: frozenset(
        {
            ProcessingStatus.COMPLETED,
            ProcessingStatus.FAILED,
            ProcessingStatus.SKIPPED,
            ProcessingStatus.PENDING,
        }
    ),
    ProcessingStatus.COMPLETED: frozenset(),
    ProcessingStatus.FAILED: frozenset({ProcessingStatus.PENDING}),
    ProcessingStatus.SKIPPED: frozenset({ProcessingStatus.PENDING}),
}


class InvalidTransitionError(ValueError):
    def __init__(self, current: ProcessingStatus, target: ProcessingStatus):
        super().__init__(f"Cannot move entry from {current.value} to {target.value}.")
        self.current = current
        self.target = target


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    return target in _TRANSITIONS[current]


def ensure_transition(current: ProcessingStatus, target: ProcessingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def is_terminal(status: ProcessingStatus) -> bool:
    return status in {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED, ProcessingStatus.SKIPPED}


def is_retryable(status: ProcessingStatus) -> bool:
    return status in {ProcessingStatus.FAILED, ProcessingStatus.SKIPPED}


def final_status_for(result: AnalysisInvocationResult) -> ProcessingStatus:
    if result.is_queued:
        return ProcessingStatus.COMPLETED
    if result.requires_credentials:
        return ProcessingStatus.SKIPPED
    return ProcessingStatus.FAILED
