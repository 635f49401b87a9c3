from __future__ import annotations

import logging
import threading
from datetime import date, datetime, tzinfo
from typing import Any, Callable, Protocol

from .llm import LlmClient
from .models import (
    AnalysisInvocationResult,
    DailySummaryMealContext,
    DailySummaryPayload,
    DailySummaryRequest,
    EntryAnalysis,
    EntryType,
    MealPayload,
    ProcessingStatus,
    TrackedEntry,
)
from .results import AnalysisParseError, MealAnalysisResult, parse_meal_result
from .settings import SUMMARY_PURPOSE, SettingsProvider, resolve_request_context
from .timeutil import (
    capture_time_zone_metadata,
    day_bounds_for,
    ensure_utc,
    local_date_for,
    resolve_time_zone,
    to_original_local,
    utc_now,
)

logger = logging.getLogger(__name__)


class SummaryEntrySource(Protocol):
    def list_in_window(
        self,
        start_utc: datetime,
        end_utc: datetime,
        entry_type: EntryType | None = None,
    ) -> list[TrackedEntry]: ...


class SummaryAnalysisStore(Protocol):
    def add(self, analysis: EntryAnalysis) -> int: ...

    def update(self, analysis: EntryAnalysis) -> bool: ...

    def get_by_entry_id(self, entry_id: int) -> EntryAnalysis | None: ...

    def list_in_window(self, start_utc: datetime, end_utc: datetime) -> list[EntryAnalysis]: ...


class SummaryLockRegistry:
    """One lock per summary entry id so regeneration of a day never interleaves."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def lock_for(self, entry_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(entry_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entry_id] = lock
            return lock


_DEFAULT_LOCKS = SummaryLockRegistry()


class DailySummaryService:
    def __init__(
        self,
        settings_provider: SettingsProvider,
        entry_repository: SummaryEntrySource,
        analysis_repository: SummaryAnalysisStore,
        llm_client: LlmClient,
        clock: Callable[[], datetime] | None = None,
        locks: SummaryLockRegistry | None = None,
    ):
        self._settings_provider = settings_provider
        self._entry_repository = entry_repository
        self._analysis_repository = analysis_repository
        self._llm_client = llm_client
        self._clock = clock or utc_now
        self._locks = locks or _DEFAULT_LOCKS

    def generate(self, summary_entry: TrackedEntry) -> AnalysisInvocationResult:
        with self._locks.lock_for(summary_entry.entry_id):
            try:
                return self._generate(summary_entry)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to generate daily summary for entry %s.", summary_entry.entry_id)
                return AnalysisInvocationResult.error()

    def _generate(self, summary_entry: TrackedEntry) -> AnalysisInvocationResult:
        context = resolve_request_context(self._settings_provider.get_app_settings(), SUMMARY_PURPOSE)
        if isinstance(context, AnalysisInvocationResult):
            logger.info("Daily summary %s skipped: %s", summary_entry.entry_id, context.user_message)
            return context

        zone_id = summary_entry.captured_at_time_zone_id
        offset = summary_entry.captured_at_offset_minutes
        start_utc, end_utc = day_bounds_for(summary_entry.captured_at, zone_id, offset)

        meals = [
            entry
            for entry in self._entry_repository.list_in_window(start_utc, end_utc, EntryType.MEAL)
            if entry.processing_status is ProcessingStatus.COMPLETED
        ]
        meals.sort(key=lambda entry: ensure_utc(entry.captured_at))

        latest_by_entry: dict[int, EntryAnalysis] = {}
        for analysis in self._analysis_repository.list_in_window(start_utc, end_utc):
            if analysis.entry_id == summary_entry.entry_id:
                continue
            current = latest_by_entry.get(analysis.entry_id)
            if current is None or ensure_utc(analysis.captured_at) >= ensure_utc(current.captured_at):
                latest_by_entry[analysis.entry_id] = analysis

        request = DailySummaryRequest(
            summary_entry_id=summary_entry.entry_id,
            summary_date=local_date_for(summary_entry.captured_at, zone_id, offset),
            time_zone_id=zone_id,
            offset_minutes=offset,
        )
        for meal in meals:
            request.meals.append(self._meal_context(meal, latest_by_entry.get(meal.entry_id)))

        existing = self._analysis_repository.get_by_entry_id(summary_entry.entry_id)
        llm_result = self._llm_client.invoke_daily_summary(
            request,
            context,
            existing.insights_json if existing is not None else None,
        )
        analysis = llm_result.analysis
        if analysis is None:
            logger.warning("Model returned no daily summary for entry %s.", summary_entry.entry_id)
            return AnalysisInvocationResult.no_analysis()

        analysis.entry_id = summary_entry.entry_id
        analysis.captured_at = self._clock()
        if existing is None:
            self._analysis_repository.add(analysis)
        else:
            analysis.analysis_id = existing.analysis_id
            analysis.external_id = existing.external_id
            self._analysis_repository.update(analysis)

        diagnostics = llm_result.diagnostics
        if diagnostics is not None:
            logger.info(
                "Stored daily summary for %s with %s meal(s). Tokens used: prompt=%s, completion=%s, total=%s.",
                request.summary_date.isoformat(),
                len(request.meals),
                diagnostics.prompt_token_count,
                diagnostics.completion_token_count,
                diagnostics.total_token_count,
            )
        return AnalysisInvocationResult.success()

    @staticmethod
    def _meal_context(meal: TrackedEntry, analysis: EntryAnalysis | None) -> DailySummaryMealContext:
        structured: MealAnalysisResult | None = None
        if analysis is not None:
            try:
                structured = parse_meal_result(analysis.insights_json)
            except AnalysisParseError as exc:
                logger.warning("Meal analysis for entry %s is unreadable for the daily summary: %s", meal.entry_id, exc)

        description = meal.payload.description if isinstance(meal.payload, MealPayload) else None
        captured_at = ensure_utc(meal.captured_at)
        return DailySummaryMealContext(
            entry_id=meal.entry_id,
            captured_at_utc=captured_at,
            captured_at_local=to_original_local(
                captured_at,
                meal.captured_at_time_zone_id,
                meal.captured_at_offset_minutes,
            ),
            time_zone_id=meal.captured_at_time_zone_id,
            offset_minutes=meal.captured_at_offset_minutes,
            description=description,
            analysis=structured,
        )


class DayEntrySource(Protocol):
    def add(self, entry: TrackedEntry) -> int: ...

    def update(self, entry: TrackedEntry) -> Any: ...

    def list_by_type_and_day(
        self,
        entry_type: EntryType,
        local_date: date,
        tz: tzinfo | None = None,
    ) -> list[TrackedEntry]: ...


class EntryScheduler(Protocol):
    def queue(self, entry_id: int) -> Any: ...


def request_daily_summary(
    entry_repository: DayEntrySource,
    scheduler: EntryScheduler,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> TrackedEntry:
    """Create or refresh today's summary placeholder and queue it for generation."""
    generated_at = ensure_utc(now) if now is not None else utc_now()
    zone_id, offset = capture_time_zone_metadata(generated_at, tz)
    zone = tz if tz is not None else resolve_time_zone(zone_id, offset)
    local_date = generated_at.astimezone(zone).date()

    meal_count = len(entry_repository.list_by_type_and_day(EntryType.MEAL, local_date, zone))
    payload = DailySummaryPayload(
        meal_count=meal_count,
        generated_at=generated_at,
        generated_at_time_zone_id=zone_id,
        generated_at_offset_minutes=offset,
    )

    existing = sorted(
        entry_repository.list_by_type_and_day(EntryType.DAILY_SUMMARY, local_date, zone),
        key=lambda entry: ensure_utc(entry.captured_at),
    )
    if existing:
        summary_entry = existing[-1]
        summary_entry.payload = payload
        summary_entry.captured_at = generated_at
        summary_entry.captured_at_time_zone_id = zone_id
        summary_entry.captured_at_offset_minutes = offset
        summary_entry.data_schema_version = payload.schema_version
        summary_entry.processing_status = ProcessingStatus.PENDING
        entry_repository.update(summary_entry)
    else:
        summary_entry = TrackedEntry(
            entry_type=EntryType.DAILY_SUMMARY,
            captured_at=generated_at,
            payload=payload,
            captured_at_time_zone_id=zone_id,
            captured_at_offset_minutes=offset,
            data_schema_version=payload.schema_version,
            processing_status=ProcessingStatus.PENDING,
        )
        entry_repository.add(summary_entry)

    scheduler.queue(summary_entry.entry_id)
    logger.info(
        "Queued daily summary %s for %s with %s meal(s).",
        summary_entry.entry_id,
        local_date.isoformat(),
        meal_count,
    )
    return summary_entry


def is_summary_outdated(summary_entry: TrackedEntry, current_meal_count: int) -> bool:
    status = summary_entry.processing_status
    if status is ProcessingStatus.COMPLETED:
        payload = summary_entry.payload
        counted = payload.meal_count if isinstance(payload, DailySummaryPayload) else 0
        return current_meal_count > counted
    return status in {ProcessingStatus.FAILED, ProcessingStatus.SKIPPED}
