from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Union

from .timeutil import ensure_utc


class EntryType(str, Enum):
    UNKNOWN = "Unknown"
    MEAL = "Meal"
    EXERCISE = "Exercise"
    SLEEP = "Sleep"
    OTHER = "Other"
    DAILY_SUMMARY = "DailySummary"

    @classmethod
    def from_storage(cls, value: str | None) -> "EntryType":
        raw = (value or "").strip()
        for member in cls:
            if member.value.lower() == raw.lower():
                return member
        return cls.UNKNOWN


class ProcessingStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class LlmProvider(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    LOCAL = "local"
    ANTHROPIC = "anthropic"

    @classmethod
    def parse(cls, value: str | None) -> "LlmProvider | None":
        raw = (value or "").strip().lower()
        for member in cls:
            if member.value == raw:
                return member
        return None


@dataclass
class PendingEntryPayload:
    description: str | None = None
    preview_blob_path: str | None = None
    schema_version: int = 0

    kind = "pending"


@dataclass
class MealPayload:
    description: str | None = None
    preview_blob_path: str | None = None
    schema_version: int = 1

    kind = "meal"


@dataclass
class ExercisePayload:
    description: str | None = None
    preview_blob_path: str | None = None
    screenshot_blob_path: str | None = None
    schema_version: int = 1

    kind = "exercise"


@dataclass
class DailySummaryPayload:
    meal_count: int = 0
    generated_at: datetime | None = None
    generated_at_time_zone_id: str | None = None
    generated_at_offset_minutes: int | None = None
    schema_version: int = 1

    kind = "daily_summary"


EntryPayload = Union[PendingEntryPayload, MealPayload, ExercisePayload, DailySummaryPayload]


def payload_to_dict(payload: EntryPayload) -> dict[str, Any]:
    if isinstance(payload, PendingEntryPayload):
        body: dict[str, Any] = {
            "description": payload.description,
            "previewBlobPath": payload.preview_blob_path,
        }
    elif isinstance(payload, MealPayload):
        body = {
            "description": payload.description,
            "previewBlobPath": payload.preview_blob_path,
        }
    elif isinstance(payload, ExercisePayload):
        body = {
            "description": payload.description,
            "previewBlobPath": payload.preview_blob_path,
            "screenshotBlobPath": payload.screenshot_blob_path,
        }
    elif isinstance(payload, DailySummaryPayload):
        body = {
            "mealCount": payload.meal_count,
            "generatedAt": ensure_utc(payload.generated_at).isoformat() if payload.generated_at else None,
            "generatedAtTimeZoneId": payload.generated_at_time_zone_id,
            "generatedAtOffsetMinutes": payload.generated_at_offset_minutes,
        }
    else:
        raise ValueError(f"Unsupported payload type: {type(payload).__name__}")
    body["kind"] = payload.kind
    body["schemaVersion"] = payload.schema_version
    return body


def payload_from_dict(data: dict[str, Any] | None, entry_type: EntryType) -> EntryPayload:
    data = data if isinstance(data, dict) else {}
    kind = data.get("kind") or _legacy_kind(entry_type)

    if kind == PendingEntryPayload.kind:
        return PendingEntryPayload(
            description=_opt_str(data.get("description")),
            preview_blob_path=_opt_str(data.get("previewBlobPath")),
            schema_version=_int(data.get("schemaVersion"), 0),
        )
    if kind == MealPayload.kind:
        return MealPayload(
            description=_opt_str(data.get("description")),
            preview_blob_path=_opt_str(data.get("previewBlobPath")),
            schema_version=_int(data.get("schemaVersion"), 1),
        )
    if kind == ExercisePayload.kind:
        return ExercisePayload(
            description=_opt_str(data.get("description")),
            preview_blob_path=_opt_str(data.get("previewBlobPath")),
            screenshot_blob_path=_opt_str(data.get("screenshotBlobPath")),
            schema_version=_int(data.get("schemaVersion"), 1),
        )
    if kind == DailySummaryPayload.kind:
        schema_version = _int(data.get("schemaVersion"), 1)
        offset = data.get("generatedAtOffsetMinutes")
        return DailySummaryPayload(
            meal_count=_int(data.get("mealCount"), 0),
            generated_at=_parse_datetime(data.get("generatedAt")),
            generated_at_time_zone_id=_opt_str(data.get("generatedAtTimeZoneId")),
            generated_at_offset_minutes=_int(offset, 0) if offset is not None else None,
            schema_version=schema_version or 1,
        )
    raise ValueError(f"Unknown payload kind: {kind!r}")


def _legacy_kind(entry_type: EntryType) -> str:
    if entry_type is EntryType.MEAL:
        return MealPayload.kind
    if entry_type is EntryType.DAILY_SUMMARY:
        return DailySummaryPayload.kind
    return PendingEntryPayload.kind


@dataclass
class TrackedEntry:
    entry_type: EntryType
    captured_at: datetime
    payload: EntryPayload
    entry_id: int = 0
    external_id: str | None = None
    captured_at_time_zone_id: str | None = None
    captured_at_offset_minutes: int | None = None
    blob_path: str | None = None
    data_schema_version: int = 0
    processing_status: ProcessingStatus = ProcessingStatus.PENDING


@dataclass
class EntryAnalysis:
    provider_id: str
    model: str
    captured_at: datetime
    insights_json: str
    entry_id: int = 0
    analysis_id: int = 0
    external_id: str | None = None
    schema_version: str = "unknown"


@dataclass(frozen=True)
class EntryStatusChanged:
    entry_id: int
    status: ProcessingStatus


@dataclass(frozen=True)
class AnalysisInvocationResult:
    is_queued: bool
    user_message: str | None = None
    requires_credentials: bool = False

    @classmethod
    def success(cls) -> "AnalysisInvocationResult":
        return cls(True)

    @classmethod
    def missing_credentials(cls, provider: str) -> "AnalysisInvocationResult":
        return cls(False, f"Add an API key for {provider} to enable entry analysis.", True)

    @classmethod
    def missing_model(cls, provider: str) -> "AnalysisInvocationResult":
        return cls(False, f"Select a model for {provider} before running entry analysis.")

    @classmethod
    def not_supported(cls, provider: str) -> "AnalysisInvocationResult":
        return cls(False, f"{provider} is not supported yet. Switch providers in settings to analyze entries.")

    @classmethod
    def no_analysis(cls) -> "AnalysisInvocationResult":
        return cls(False, "The analysis service did not return results. Try again later.")

    @classmethod
    def error(cls) -> "AnalysisInvocationResult":
        return cls(False, "Entry analysis failed. You can retry from the entry log.")

    @classmethod
    def invalid_request(cls, message: str) -> "AnalysisInvocationResult":
        return cls(False, message)


@dataclass(frozen=True)
class LlmRequestContext:
    model_id: str
    provider: LlmProvider
    api_key: str
    endpoint: str = ""


@dataclass(frozen=True)
class LlmDiagnostics:
    prompt_token_count: int | None = None
    completion_token_count: int | None = None
    total_token_count: int | None = None


@dataclass
class LlmAnalysisResult:
    analysis: EntryAnalysis | None
    diagnostics: LlmDiagnostics | None = None


@dataclass
class DailySummaryMealContext:
    entry_id: int
    captured_at_utc: datetime
    captured_at_local: datetime
    time_zone_id: str | None
    offset_minutes: int | None
    description: str | None
    analysis: Any = None


@dataclass
class DailySummaryRequest:
    summary_entry_id: int
    summary_date: date
    time_zone_id: str | None = None
    offset_minutes: int | None = None
    meals: list[DailySummaryMealContext] = field(default_factory=list)


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None
