from __future__ import annotations

import base64
import logging
import mimetypes
import threading
from pathlib import Path
from typing import Any, Protocol

import google.generativeai as genai
import requests

from .models import (
    DailySummaryRequest,
    EntryAnalysis,
    LlmAnalysisResult,
    LlmDiagnostics,
    LlmProvider,
    LlmRequestContext,
    TrackedEntry,
)
from .paths import resolve_blob_path
from .results import MealAnalysisResult, schema_version_of
from .timeutil import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 240
OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"
LOCAL_ENDPOINT = "http://localhost:1234/v1/chat/completions"

_ANALYSIS_SYSTEM_PROMPT = (
    "You are a helpful assistant that analyzes wellbeing captures: meal photos, "
    "exercise summaries and sleep screenshots.\n"
    "First decide which category the capture belongs to, then analyze it.\n"
    "Be accurate but acknowledge uncertainty when applicable."
)

_UNIFIED_SCHEMA_HINT = (
    "Return strict JSON with this shape only:\n"
    "{"
    "\"schemaVersion\":\"1.0\","
    "\"entryType\":\"Meal|Exercise|Sleep|Other\","
    "\"confidence\":0.0,"
    "\"mealAnalysis\":{\"schemaVersion\":\"1.0\",\"foodItems\":[{\"name\":\"...\",\"portionSize\":\"...\",\"calories\":0,\"confidence\":0.0}],"
    "\"nutrition\":{\"totalCalories\":0,\"protein\":0,\"carbohydrates\":0,\"fat\":0,\"fiber\":0,\"sugar\":0,\"sodium\":0},"
    "\"healthInsights\":{\"healthScore\":0,\"summary\":\"...\",\"positives\":[],\"improvements\":[],\"recommendations\":[]},"
    "\"confidence\":0.0,\"warnings\":[]},"
    "\"exerciseAnalysis\":{\"activityType\":\"...\",\"durationMinutes\":0,\"distanceKm\":0,\"caloriesBurned\":0,"
    "\"averageHeartRate\":0,\"insights\":[],\"confidence\":0.0,\"warnings\":[]},"
    "\"sleepAnalysis\":{\"durationHours\":0,\"qualityScore\":0,\"insights\":[],\"confidence\":0.0,\"warnings\":[]},"
    "\"otherAnalysis\":{\"summary\":\"...\",\"tags\":[],\"confidence\":0.0,\"warnings\":[]},"
    "\"warnings\":[]"
    "}\n"
    "Rules:\n"
    "- Populate only the analysis object matching entryType; omit or null the others.\n"
    "- confidence values are between 0.0 and 1.0.\n"
    "- healthScore is between 0 and 10.\n"
    "- No markdown, no prose outside JSON."
)

_SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that summarizes a day of meals.\n"
    "Combine the individual meal analyses into daily totals and an overall assessment."
)

_SUMMARY_SCHEMA_HINT = (
    "Return strict JSON with this shape only:\n"
    "{"
    "\"schemaVersion\":\"1.0\","
    "\"totals\":{\"calories\":0,\"protein\":0,\"carbohydrates\":0,\"fat\":0,\"fiber\":0,\"sugar\":0,\"sodium\":0},"
    "\"balance\":{\"overall\":\"...\",\"macroBalance\":\"...\",\"timing\":\"...\",\"variety\":\"...\"},"
    "\"insights\":[],"
    "\"recommendations\":[],"
    "\"entriesIncluded\":[{\"entryId\":0,\"capturedAt\":\"HH:MM\",\"summary\":\"...\"}],"
    "\"warnings\":[]"
    "}\n"
    "Rules:\n"
    "- entriesIncluded lists every meal below by entryId.\n"
    "- If there are no meals, return zero totals and say so in warnings.\n"
    "- No markdown, no prose outside JSON."
)


class LlmRequestError(RuntimeError):
    pass


class LlmClient(Protocol):
    def invoke_analysis(
        self,
        entry: TrackedEntry,
        context: LlmRequestContext,
        existing_insights_json: str | None = None,
        correction_text: str | None = None,
    ) -> LlmAnalysisResult: ...

    def invoke_daily_summary(
        self,
        request: DailySummaryRequest,
        context: LlmRequestContext,
        existing_summary_json: str | None = None,
    ) -> LlmAnalysisResult: ...


class OpenAiCompatibleClient:
    """Chat-completions client for OpenAI and OpenAI-compatible local servers."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, session: requests.Session | None = None):
        self._timeout = timeout
        self._session = session or requests.Session()

    def invoke_analysis(
        self,
        entry: TrackedEntry,
        context: LlmRequestContext,
        existing_insights_json: str | None = None,
        correction_text: str | None = None,
    ) -> LlmAnalysisResult:
        _require_api_key(context)
        content: list[dict[str, Any]] = [
            {"type": "text", "text": build_analysis_prompt(entry, existing_insights_json, correction_text)}
        ]
        if context.provider is LlmProvider.OPENAI:
            data_uri = _image_data_uri(_entry_image_path(entry))
            if data_uri:
                content.append({"type": "image_url", "image_url": {"url": data_uri}})

        data = self._complete(context, _ANALYSIS_SYSTEM_PROMPT, content)
        text = _extract_openai_text(data)
        return LlmAnalysisResult(
            analysis=_analysis_from_text(entry.entry_id, context, text),
            diagnostics=_openai_diagnostics(data),
        )

    def invoke_daily_summary(
        self,
        request: DailySummaryRequest,
        context: LlmRequestContext,
        existing_summary_json: str | None = None,
    ) -> LlmAnalysisResult:
        _require_api_key(context)
        content = [{"type": "text", "text": build_daily_summary_prompt(request, existing_summary_json)}]
        data = self._complete(context, _SUMMARY_SYSTEM_PROMPT, content)
        text = _extract_openai_text(data)
        return LlmAnalysisResult(
            analysis=_analysis_from_text(request.summary_entry_id, context, text),
            diagnostics=_openai_diagnostics(data),
        )

    def _complete(
        self,
        context: LlmRequestContext,
        system_prompt: str,
        content: list[dict[str, Any]],
    ) -> dict[str, Any]:
        payload = {
            "model": context.model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            "response_format": {"type": "json_object"},
        }
        endpoint = _resolve_openai_endpoint(context.provider, context.endpoint)
        return self._post_json(endpoint, payload, headers=_auth_headers(context.api_key))

    def _post_json(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = self._session.post(url, json=payload, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise LlmRequestError(f"AI request failed: {exc}") from exc

        if response.status_code >= 400:
            raise LlmRequestError(f"AI request failed ({response.status_code}): {response.text}")
        try:
            data = response.json()
        except ValueError as exc:
            raise LlmRequestError("AI provider returned non-JSON response.") from exc
        if not isinstance(data, dict):
            raise LlmRequestError("AI provider returned an unexpected response.")
        return data


class GeminiClient:
    """Gemini client; the SDK keeps its API key in module state, so calls are serialized."""

    _configure_lock = threading.Lock()

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self._timeout = timeout

    def invoke_analysis(
        self,
        entry: TrackedEntry,
        context: LlmRequestContext,
        existing_insights_json: str | None = None,
        correction_text: str | None = None,
    ) -> LlmAnalysisResult:
        _require_api_key(context)
        parts: list[Any] = [
            _ANALYSIS_SYSTEM_PROMPT,
            build_analysis_prompt(entry, existing_insights_json, correction_text),
        ]
        image_part = _image_part_for_gemini(_entry_image_path(entry))
        if image_part:
            parts.append(image_part)
        text, diagnostics = self._generate(context, parts)
        return LlmAnalysisResult(
            analysis=_analysis_from_text(entry.entry_id, context, text),
            diagnostics=diagnostics,
        )

    def invoke_daily_summary(
        self,
        request: DailySummaryRequest,
        context: LlmRequestContext,
        existing_summary_json: str | None = None,
    ) -> LlmAnalysisResult:
        _require_api_key(context)
        parts = [_SUMMARY_SYSTEM_PROMPT, build_daily_summary_prompt(request, existing_summary_json)]
        text, diagnostics = self._generate(context, parts)
        return LlmAnalysisResult(
            analysis=_analysis_from_text(request.summary_entry_id, context, text),
            diagnostics=diagnostics,
        )

    def _generate(self, context: LlmRequestContext, parts: list[Any]) -> tuple[str, LlmDiagnostics | None]:
        try:
            with self._configure_lock:
                genai.configure(api_key=context.api_key)
                model = genai.GenerativeModel(
                    context.model_id,
                    generation_config={"temperature": 0.2, "response_mime_type": "application/json"},
                )
                response = model.generate_content(parts, request_options={"timeout": self._timeout})
            text = response.text
        except Exception as exc:  # noqa: BLE001
            raise LlmRequestError(f"Gemini request failed: {exc}") from exc

        if not isinstance(text, str) or not text.strip():
            raise LlmRequestError("Gemini response did not include text output.")
        return text, _gemini_diagnostics(response)


class RoutingLlmClient:
    """Dispatches each request to the client registered for ``context.provider``."""

    def __init__(self, clients: dict[LlmProvider, LlmClient]):
        self._clients = dict(clients)

    def _client_for(self, provider: LlmProvider) -> LlmClient:
        client = self._clients.get(provider)
        if client is None:
            raise LlmRequestError(f"No client is configured for provider {provider.value}.")
        return client

    def invoke_analysis(
        self,
        entry: TrackedEntry,
        context: LlmRequestContext,
        existing_insights_json: str | None = None,
        correction_text: str | None = None,
    ) -> LlmAnalysisResult:
        return self._client_for(context.provider).invoke_analysis(
            entry, context, existing_insights_json, correction_text
        )

    def invoke_daily_summary(
        self,
        request: DailySummaryRequest,
        context: LlmRequestContext,
        existing_summary_json: str | None = None,
    ) -> LlmAnalysisResult:
        return self._client_for(context.provider).invoke_daily_summary(request, context, existing_summary_json)


def build_llm_client(timeout: float = DEFAULT_TIMEOUT_SECONDS) -> RoutingLlmClient:
    openai_style = OpenAiCompatibleClient(timeout=timeout)
    return RoutingLlmClient(
        {
            LlmProvider.OPENAI: openai_style,
            LlmProvider.LOCAL: openai_style,
            LlmProvider.GEMINI: GeminiClient(timeout=timeout),
        }
    )


def build_analysis_prompt(
    entry: TrackedEntry,
    existing_insights_json: str | None = None,
    correction_text: str | None = None,
) -> str:
    lines = ["Analyze this capture."]
    description = getattr(entry.payload, "description", None)
    if description and description.strip():
        lines.append(f"User description: {description.strip()}")
    if entry.entry_type.value != "Unknown":
        lines.append(f"Current category: {entry.entry_type.value}")

    if correction_text and correction_text.strip():
        lines.append("The user reviewed an earlier analysis and asked for a correction.")
        if existing_insights_json and existing_insights_json.strip():
            lines.append(f"Previous analysis JSON: {existing_insights_json.strip()}")
        lines.append(f"User correction: {correction_text.strip()}")
        lines.append("Apply the correction and return the full updated analysis, not a diff.")

    lines.append(_UNIFIED_SCHEMA_HINT)
    return "\n".join(lines)


def build_daily_summary_prompt(request: DailySummaryRequest, existing_summary_json: str | None = None) -> str:
    lines = [f"Date: {request.summary_date.isoformat()}"]
    if request.time_zone_id:
        lines.append(f"Time zone: {request.time_zone_id}")
    elif request.offset_minutes is not None:
        lines.append(f"UTC offset minutes: {request.offset_minutes}")

    if request.meals:
        lines.append("Meals:")
        for meal in request.meals:
            lines.append(
                f"- entryId={meal.entry_id} at {meal.captured_at_local.strftime('%H:%M')}: "
                f"{_meal_context_line(meal.description, meal.analysis)}"
            )
    else:
        lines.append("No completed meals were logged for this day.")

    if existing_summary_json and existing_summary_json.strip():
        lines.append(f"Previous summary JSON (replace it entirely): {existing_summary_json.strip()}")
    lines.append(_SUMMARY_SCHEMA_HINT)
    return "\n".join(lines)


def _meal_context_line(description: str | None, analysis: MealAnalysisResult | None) -> str:
    parts: list[str] = []
    if description and description.strip():
        parts.append(f"description={description.strip()}")
    if analysis is None:
        parts.append("analysis unavailable")
        return ", ".join(parts)

    foods = [item.name for item in analysis.food_items[:12]]
    if foods:
        parts.append(f"foods={'; '.join(foods)}")
    if analysis.nutrition is not None:
        nutrition = analysis.nutrition
        parts.append(
            f"calories={nutrition.total_calories}, protein={nutrition.protein}, "
            f"carbohydrates={nutrition.carbohydrates}, fat={nutrition.fat}"
        )
    if analysis.health_insights is not None and analysis.health_insights.summary:
        parts.append(f"assessment={analysis.health_insights.summary}")
    return ", ".join(parts) or "analysis unavailable"


def _require_api_key(context: LlmRequestContext) -> None:
    if context.provider is not LlmProvider.LOCAL and not context.api_key.strip():
        raise LlmRequestError(f"API key is not configured for {context.provider.value}.")


def _analysis_from_text(entry_id: int, context: LlmRequestContext, text: str) -> EntryAnalysis:
    return EntryAnalysis(
        entry_id=entry_id,
        provider_id=context.provider.value,
        model=context.model_id,
        captured_at=utc_now(),
        insights_json=text,
        schema_version=schema_version_of(text),
    )


def _entry_image_path(entry: TrackedEntry) -> Path | None:
    blob = entry.blob_path or getattr(entry.payload, "preview_blob_path", None)
    return resolve_blob_path(blob)


def _mime_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


def _image_data_uri(path: Path | None) -> str | None:
    if path is None:
        return None
    try:
        raw = path.read_bytes()
    except OSError:
        logger.debug("Image %s is not readable; sending text only.", path)
        return None
    encoded = base64.b64encode(raw).decode("ascii")
    return f"data:{_mime_type(path)};base64,{encoded}"


def _image_part_for_gemini(path: Path | None) -> dict[str, Any] | None:
    if path is None:
        return None
    try:
        raw = path.read_bytes()
    except OSError:
        logger.debug("Image %s is not readable; sending text only.", path)
        return None
    return {"mime_type": _mime_type(path), "data": raw}


def _resolve_openai_endpoint(provider: LlmProvider, endpoint: str) -> str:
    custom = endpoint.strip()
    if custom:
        return custom
    if provider is LlmProvider.LOCAL:
        return LOCAL_ENDPOINT
    return OPENAI_ENDPOINT


def _auth_headers(api_key: str) -> dict[str, str]:
    if not api_key.strip():
        return {}
    return {"Authorization": f"Bearer {api_key.strip()}"}


def _extract_openai_text(data: dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise LlmRequestError("OpenAI-style response missing choices.")
    message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
    content = message.get("content")
    if isinstance(content, str) and content.strip():
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for entry in content:
            if isinstance(entry, dict):
                text = entry.get("text")
                if isinstance(text, str):
                    chunks.append(text)
        joined = "\n".join(chunks).strip()
        if joined:
            return joined
    raise LlmRequestError("OpenAI-style response did not include text content.")


def _openai_diagnostics(data: dict[str, Any]) -> LlmDiagnostics | None:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    return LlmDiagnostics(
        prompt_token_count=_opt_int(usage.get("prompt_tokens")),
        completion_token_count=_opt_int(usage.get("completion_tokens")),
        total_token_count=_opt_int(usage.get("total_tokens")),
    )


def _gemini_diagnostics(response: Any) -> LlmDiagnostics | None:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return None
    return LlmDiagnostics(
        prompt_token_count=_opt_int(getattr(usage, "prompt_token_count", None)),
        completion_token_count=_opt_int(getattr(usage, "candidates_token_count", None)),
        total_token_count=_opt_int(getattr(usage, "total_token_count", None)),
    )


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
