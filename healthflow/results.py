"""Structured model results and their tolerant parsing/validation.

Model responses are JSON documents using camelCase keys. Parsing accepts a
document wrapped in prose or code fences, and numeric fields that arrive as
strings; anything structurally wrong raises :class:`AnalysisParseError`.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any

SCHEMA_VERSION = "1.0"


class AnalysisParseError(ValueError):
    pass


@dataclass(frozen=True)
class FoodItem:
    name: str
    portion_size: str | None = None
    calories: int | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class NutritionEstimate:
    total_calories: int | None = None
    protein: float | None = None
    carbohydrates: float | None = None
    fat: float | None = None
    fiber: float | None = None
    sugar: float | None = None
    sodium: float | None = None


@dataclass(frozen=True)
class HealthInsights:
    health_score: float | None = None
    summary: str | None = None
    positives: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MealAnalysisResult:
    schema_version: str = SCHEMA_VERSION
    food_items: list[FoodItem] = field(default_factory=list)
    nutrition: NutritionEstimate | None = None
    health_insights: HealthInsights | None = None
    confidence: float | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExerciseAnalysisResult:
    activity_type: str | None = None
    duration_minutes: float | None = None
    distance_km: float | None = None
    calories_burned: int | None = None
    average_heart_rate: int | None = None
    insights: list[str] = field(default_factory=list)
    confidence: float | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SleepAnalysisResult:
    duration_hours: float | None = None
    quality_score: float | None = None
    insights: list[str] = field(default_factory=list)
    confidence: float | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OtherAnalysisResult:
    summary: str | None = None
    tags: list[str] = field(default_factory=list)
    confidence: float | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UnifiedAnalysisResult:
    entry_type: str
    schema_version: str = SCHEMA_VERSION
    confidence: float | None = None
    meal_analysis: MealAnalysisResult | None = None
    exercise_analysis: ExerciseAnalysisResult | None = None
    sleep_analysis: SleepAnalysisResult | None = None
    other_analysis: OtherAnalysisResult | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class NutritionTotals:
    calories: int | None = None
    protein: float | None = None
    carbohydrates: float | None = None
    fat: float | None = None
    fiber: float | None = None
    sugar: float | None = None
    sodium: float | None = None


@dataclass(frozen=True)
class NutritionalBalance:
    overall: str | None = None
    macro_balance: str | None = None
    timing: str | None = None
    variety: str | None = None


@dataclass(frozen=True)
class SummaryEntryReference:
    entry_id: int
    captured_at: str | None = None
    summary: str | None = None


@dataclass(frozen=True)
class DailySummaryResult:
    schema_version: str = SCHEMA_VERSION
    totals: NutritionTotals | None = None
    balance: NutritionalBalance | None = None
    insights: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    entries_included: list[SummaryEntryReference] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


_SUB_RESULT_KEYS = {
    "Meal": "mealAnalysis",
    "Exercise": "exerciseAnalysis",
    "Sleep": "sleepAnalysis",
    "Other": "otherAnalysis",
}


def load_json_object(text: str | None) -> dict[str, Any]:
    trimmed = (text or "").strip()
    if not trimmed:
        raise AnalysisParseError("Model response was empty.")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        start = trimmed.find("{")
        end = trimmed.rfind("}")
        if start == -1 or end == -1 or start >= end:
            raise AnalysisParseError("Model response did not contain valid JSON.") from None
        try:
            parsed = json.loads(trimmed[start : end + 1])
        except json.JSONDecodeError as exc:
            raise AnalysisParseError("Model response contained invalid JSON.") from exc
    if not isinstance(parsed, dict):
        raise AnalysisParseError("Model response was not a JSON object.")
    return parsed


def parse_unified_result(text: str | None) -> UnifiedAnalysisResult:
    data = load_json_object(text)
    entry_type = data.get("entryType")
    if not isinstance(entry_type, str) or not entry_type.strip():
        raise AnalysisParseError("Unified result is missing entryType.")

    populated = [key for key in _SUB_RESULT_KEYS.values() if isinstance(data.get(key), dict)]
    if len(populated) > 1:
        raise AnalysisParseError(f"Unified result populated more than one category: {', '.join(populated)}.")

    return UnifiedAnalysisResult(
        entry_type=entry_type.strip(),
        schema_version=_str(data.get("schemaVersion")) or SCHEMA_VERSION,
        confidence=_float(data.get("confidence")),
        meal_analysis=_meal(data.get("mealAnalysis")),
        exercise_analysis=_exercise(data.get("exerciseAnalysis")),
        sleep_analysis=_sleep(data.get("sleepAnalysis")),
        other_analysis=_other(data.get("otherAnalysis")),
        warnings=_str_list(data.get("warnings")),
    )


def parse_meal_result(text: str | None) -> MealAnalysisResult:
    """Parse a meal analysis, accepting either a bare meal body or a unified wrapper."""
    data = load_json_object(text)
    if isinstance(data.get("mealAnalysis"), dict):
        data = data["mealAnalysis"]
    elif "entryType" in data:
        raise AnalysisParseError("Analysis does not carry a meal result.")
    meal = _meal(data)
    if meal is None:
        raise AnalysisParseError("Meal analysis was empty.")
    return meal


def parse_daily_summary_result(text: str | None) -> DailySummaryResult:
    data = load_json_object(text)
    totals = data.get("totals")
    balance = data.get("balance")
    entries: list[SummaryEntryReference] = []
    raw_entries = data.get("entriesIncluded")
    if isinstance(raw_entries, list):
        for raw in raw_entries:
            if not isinstance(raw, dict):
                continue
            entry_id = _int(raw.get("entryId"))
            if entry_id is None:
                continue
            entries.append(
                SummaryEntryReference(
                    entry_id=entry_id,
                    captured_at=_str(raw.get("capturedAt")),
                    summary=_str(raw.get("summary")),
                )
            )

    return DailySummaryResult(
        schema_version=_str(data.get("schemaVersion")) or SCHEMA_VERSION,
        totals=NutritionTotals(
            calories=_int(totals.get("calories")),
            protein=_float(totals.get("protein")),
            carbohydrates=_float(totals.get("carbohydrates")),
            fat=_float(totals.get("fat")),
            fiber=_float(totals.get("fiber")),
            sugar=_float(totals.get("sugar")),
            sodium=_float(totals.get("sodium")),
        )
        if isinstance(totals, dict)
        else None,
        balance=NutritionalBalance(
            overall=_str(balance.get("overall")),
            macro_balance=_str(balance.get("macroBalance")),
            timing=_str(balance.get("timing")),
            variety=_str(balance.get("variety")),
        )
        if isinstance(balance, dict)
        else None,
        insights=_str_list(data.get("insights")),
        recommendations=_str_list(data.get("recommendations")),
        entries_included=entries,
        warnings=_str_list(data.get("warnings")),
    )


def schema_version_of(text: str | None) -> str:
    try:
        data = load_json_object(text)
    except AnalysisParseError:
        return "unknown"
    return _str(data.get("schemaVersion")) or "unknown"


def validate_unified_result(result: UnifiedAnalysisResult) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    entry_type = result.entry_type.strip().lower()
    sub_results = {
        "meal": result.meal_analysis,
        "exercise": result.exercise_analysis,
        "sleep": result.sleep_analysis,
        "other": result.other_analysis,
    }
    if entry_type in sub_results and sub_results[entry_type] is None:
        errors.append(f"entryType is {result.entry_type} but {entry_type}Analysis is missing.")

    if result.confidence is not None and not 0.0 <= result.confidence <= 1.0:
        warnings.append(f"Confidence {result.confidence} is outside 0.0-1.0.")

    meal = result.meal_analysis
    if meal is not None:
        if not meal.food_items:
            warnings.append("Meal analysis did not list any food items.")
        for item in meal.food_items:
            if item.confidence is not None and not 0.0 <= item.confidence <= 1.0:
                warnings.append(f"Food item {item.name!r} has confidence outside 0.0-1.0.")
        if meal.health_insights and meal.health_insights.health_score is not None:
            if not 0.0 <= meal.health_insights.health_score <= 10.0:
                warnings.append("Health score is outside 0-10.")
        warnings.extend(meal.warnings)

    warnings.extend(result.warnings)
    return ValidationResult(errors=errors, warnings=warnings)


def _meal(raw: Any) -> MealAnalysisResult | None:
    if not isinstance(raw, dict):
        return None
    items: list[FoodItem] = []
    raw_items = raw.get("foodItems")
    if isinstance(raw_items, list):
        for entry in raw_items:
            if not isinstance(entry, dict):
                continue
            name = _str(entry.get("name"))
            if not name:
                continue
            items.append(
                FoodItem(
                    name=name,
                    portion_size=_str(entry.get("portionSize")),
                    calories=_int(entry.get("calories")),
                    confidence=_float(entry.get("confidence")),
                )
            )

    nutrition = raw.get("nutrition")
    insights = raw.get("healthInsights")
    return MealAnalysisResult(
        schema_version=_str(raw.get("schemaVersion")) or SCHEMA_VERSION,
        food_items=items,
        nutrition=NutritionEstimate(
            total_calories=_int(nutrition.get("totalCalories")),
            protein=_float(nutrition.get("protein")),
            carbohydrates=_float(nutrition.get("carbohydrates")),
            fat=_float(nutrition.get("fat")),
            fiber=_float(nutrition.get("fiber")),
            sugar=_float(nutrition.get("sugar")),
            sodium=_float(nutrition.get("sodium")),
        )
        if isinstance(nutrition, dict)
        else None,
        health_insights=HealthInsights(
            health_score=_float(insights.get("healthScore")),
            summary=_str(insights.get("summary")),
            positives=_str_list(insights.get("positives")),
            improvements=_str_list(insights.get("improvements")),
            recommendations=_str_list(insights.get("recommendations")),
        )
        if isinstance(insights, dict)
        else None,
        confidence=_float(raw.get("confidence")),
        warnings=_str_list(raw.get("warnings")),
    )


def _exercise(raw: Any) -> ExerciseAnalysisResult | None:
    if not isinstance(raw, dict):
        return None
    return ExerciseAnalysisResult(
        activity_type=_str(raw.get("activityType")),
        duration_minutes=_float(raw.get("durationMinutes")),
        distance_km=_float(raw.get("distanceKm")),
        calories_burned=_int(raw.get("caloriesBurned")),
        average_heart_rate=_int(raw.get("averageHeartRate")),
        insights=_str_list(raw.get("insights")),
        confidence=_float(raw.get("confidence")),
        warnings=_str_list(raw.get("warnings")),
    )


def _sleep(raw: Any) -> SleepAnalysisResult | None:
    if not isinstance(raw, dict):
        return None
    return SleepAnalysisResult(
        duration_hours=_float(raw.get("durationHours")),
        quality_score=_float(raw.get("qualityScore")),
        insights=_str_list(raw.get("insights")),
        confidence=_float(raw.get("confidence")),
        warnings=_str_list(raw.get("warnings")),
    )


def _other(raw: Any) -> OtherAnalysisResult | None:
    if not isinstance(raw, dict):
        return None
    return OtherAnalysisResult(
        summary=_str(raw.get("summary")),
        tags=_str_list(raw.get("tags")),
        confidence=_float(raw.get("confidence")),
        warnings=_str_list(raw.get("warnings")),
    )


def _str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _int(value: Any) -> int | None:
    number = _float(value)
    if number is None:
        return None
    return int(round(number))
