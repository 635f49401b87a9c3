from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .models import (
    AnalysisInvocationResult,
    EntryStatusChanged,
    EntryType,
    ProcessingStatus,
    TrackedEntry,
)
from .status import can_transition, final_status_for, is_retryable

logger = logging.getLogger(__name__)

DEFAULT_STATUS_QUEUE_SIZE = 256

StatusListener = Callable[[EntryStatusChanged], None]


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError()


class _Subscription:
    def __init__(self, listener: StatusListener, queue_size: int):
        self.listener = listener
        self._events: deque[EntryStatusChanged] = deque(maxlen=queue_size)
        self._condition = threading.Condition()
        self._busy = False
        self._closed = False
        self._thread = threading.Thread(
            target=self._dispatch_loop,
            name="healthflow-status-dispatch",
            daemon=True,
        )
        self._thread.start()

    def offer(self, event: EntryStatusChanged) -> None:
        with self._condition:
            if self._closed:
                return
            if len(self._events) == self._events.maxlen:
                logger.debug("Status queue full for %r; dropping the oldest event.", self.listener)
            self._events.append(event)
            self._condition.notify_all()

    def flush(self, timeout: float | None = None) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: not self._events and not self._busy, timeout)

    def close(self, timeout: float | None = None) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _dispatch_loop(self) -> None:
        while True:
            with self._condition:
                self._condition.wait_for(lambda: self._events or self._closed)
                if not self._events:
                    return
                event = self._events.popleft()
                self._busy = True
            try:
                self.listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Status listener %r failed for entry %s.", self.listener, event.entry_id)
            finally:
                with self._condition:
                    self._busy = False
                    self._condition.notify_all()


class StatusBroadcaster:
    """Fans status changes out to listeners without ever blocking the publisher.

    Every listener gets its own bounded queue and dispatch thread; when a
    queue is full the oldest undelivered event is dropped.
    """

    def __init__(self, queue_size: int = DEFAULT_STATUS_QUEUE_SIZE):
        self._queue_size = max(1, int(queue_size))
        self._lock = threading.Lock()
        self._subscriptions: list[_Subscription] = []

    def subscribe(self, listener: StatusListener) -> None:
        with self._lock:
            self._subscriptions.append(_Subscription(listener, self._queue_size))

    def unsubscribe(self, listener: StatusListener) -> bool:
        with self._lock:
            for index, subscription in enumerate(self._subscriptions):
                if subscription.listener == listener:
                    del self._subscriptions[index]
                    break
            else:
                return False
        subscription.close(timeout=0)
        return True

    def publish(self, event: EntryStatusChanged) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.offer(event)

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued event has been delivered."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        return all(subscription.flush(timeout) for subscription in subscriptions)

    def close(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close(timeout)


class ScopedEntries(Protocol):
    def get_by_id(self, entry_id: int) -> TrackedEntry | None: ...

    def update_processing_status(self, entry_id: int, status: ProcessingStatus) -> bool: ...


class EntryProcessor(Protocol):
    def process_entry(self, entry: TrackedEntry) -> AnalysisInvocationResult: ...


class SummaryProcessor(Protocol):
    def generate(self, summary_entry: TrackedEntry) -> AnalysisInvocationResult: ...


@dataclass
class AnalysisScope:
    """Collaborators for one unit of work; closed when the work is done."""

    entries: ScopedEntries
    orchestrator: EntryProcessor
    summaries: SummaryProcessor
    analyses: Any = None
    on_close: Callable[[], None] | None = None

    def close(self) -> None:
        if self.on_close is not None:
            self.on_close()

    def __enter__(self) -> "AnalysisScope":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


ScopeFactory = Callable[[], AnalysisScope]


@dataclass
class _Handle:
    future: Future
    token: CancellationToken


class BackgroundAnalysisService:
    def __init__(
        self,
        scope_factory: ScopeFactory,
        max_workers: int | None = None,
        broadcaster: StatusBroadcaster | None = None,
    ):
        self._scope_factory = scope_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="healthflow-analysis")
        self._broadcaster = broadcaster or StatusBroadcaster()
        self._lock = threading.Lock()
        self._handles: dict[int, list[_Handle]] = {}

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self._broadcaster

    def subscribe(self, listener: StatusListener) -> None:
        self._broadcaster.subscribe(listener)

    def unsubscribe(self, listener: StatusListener) -> bool:
        return self._broadcaster.unsubscribe(listener)

    def queue(self, entry_id: int, token: CancellationToken | None = None) -> Future:
        token = token or CancellationToken()
        with self._lock:
            future = self._executor.submit(self._run, entry_id, token)
            handle = _Handle(future, token)
            self._handles.setdefault(entry_id, []).append(handle)
        future.add_done_callback(lambda _f, h=handle: self._forget(entry_id, h))
        return future

    def cancel(self, entry_id: int) -> bool:
        with self._lock:
            handles = list(self._handles.get(entry_id, []))
        for handle in handles:
            handle.token.cancel()
        return bool(handles)

    def in_flight(self) -> list[int]:
        with self._lock:
            return sorted(entry_id for entry_id, handles in self._handles.items() if handles)

    def retry(self, entry_id: int) -> Future | None:
        """Reset a Failed or Skipped entry to Pending and queue it again."""
        with self._scope_factory() as scope:
            entry = scope.entries.get_by_id(entry_id)
            if entry is None:
                logger.warning("Entry %s not found for retry.", entry_id)
                return None
            if not is_retryable(entry.processing_status):
                logger.info(
                    "Entry %s is %s and cannot be retried.",
                    entry_id,
                    entry.processing_status.value,
                )
                return None
            self._set_status(scope.entries, entry_id, ProcessingStatus.PENDING)
        return self.queue(entry_id)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        if cancel_pending:
            with self._lock:
                handles = [handle for group in self._handles.values() for handle in group]
            for handle in handles:
                handle.token.cancel()
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)
        if wait:
            self._broadcaster.flush(timeout=5.0)
            self._broadcaster.close()

    def _forget(self, entry_id: int, handle: _Handle) -> None:
        with self._lock:
            handles = self._handles.get(entry_id)
            if not handles:
                return
            if handle in handles:
                handles.remove(handle)
            if not handles:
                del self._handles[entry_id]

    def _run(self, entry_id: int, token: CancellationToken) -> None:
        if token.is_cancelled:
            logger.info("Analysis cancelled before starting for entry %s.", entry_id)
            return

        try:
            scope = self._scope_factory()
        except Exception:  # noqa: BLE001
            logger.exception("Could not open an analysis scope for entry %s; it stays Pending.", entry_id)
            return

        with scope:
            try:
                self._process(scope, entry_id, token)
            except CancelledError:
                logger.info("Background analysis was cancelled for entry %s.", entry_id)
                self._set_status_quietly(scope.entries, entry_id, ProcessingStatus.PENDING)
            except Exception:  # noqa: BLE001
                logger.exception("Background analysis failed for entry %s.", entry_id)
                self._set_status_quietly(scope.entries, entry_id, ProcessingStatus.FAILED)

    def _process(self, scope: AnalysisScope, entry_id: int, token: CancellationToken) -> None:
        entry = scope.entries.get_by_id(entry_id)
        if entry is None:
            logger.warning("Entry %s not found for analysis.", entry_id)
            return
        if not can_transition(entry.processing_status, ProcessingStatus.PROCESSING):
            logger.warning(
                "Entry %s is %s; not starting analysis.",
                entry_id,
                entry.processing_status.value,
            )
            return

        self._set_status(scope.entries, entry_id, ProcessingStatus.PROCESSING)
        entry.processing_status = ProcessingStatus.PROCESSING

        if token.is_cancelled:
            logger.info("Analysis cancelled before the model call for entry %s.", entry_id)
            self._set_status(scope.entries, entry_id, ProcessingStatus.PENDING)
            return

        if entry.entry_type is EntryType.DAILY_SUMMARY:
            logger.info("Processing daily summary entry %s.", entry_id)
            result = scope.summaries.generate(entry)
        else:
            result = scope.orchestrator.process_entry(entry)

        if token.is_cancelled:
            logger.info("Analysis cancelled after the model call for entry %s.", entry_id)
            self._set_status(scope.entries, entry_id, ProcessingStatus.PENDING)
            return

        final_status = final_status_for(result)
        if result.user_message:
            logger.info("Entry %s finished as %s: %s", entry_id, final_status.value, result.user_message)
        self._set_status(scope.entries, entry_id, final_status)

    def _set_status(self, entries: ScopedEntries, entry_id: int, status: ProcessingStatus) -> None:
        if entries.update_processing_status(entry_id, status):
            self._broadcaster.publish(EntryStatusChanged(entry_id, status))
        else:
            logger.warning("Entry %s disappeared before it could be marked %s.", entry_id, status.value)

    def _set_status_quietly(self, entries: ScopedEntries, entry_id: int, status: ProcessingStatus) -> None:
        try:
            self._set_status(entries, entry_id, status)
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark entry %s as %s.", entry_id, status.value)


def reset_interrupted(entries: Any) -> list[int]:
    """Move entries left in Processing by an earlier run back to Pending."""
    reset: list[int] = []
    for entry in entries.list_by_status(ProcessingStatus.PROCESSING):
        if entries.update_processing_status(entry.entry_id, ProcessingStatus.PENDING):
            reset.append(entry.entry_id)
    if reset:
        logger.info("Reset %s interrupted entr%s to Pending.", len(reset), "y" if len(reset) == 1 else "ies")
    return reset
