from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from healthflow.database import HealthFlowDatabase
from healthflow.llm import LlmRequestError
from healthflow.models import (
    AnalysisInvocationResult,
    EntryAnalysis,
    EntryType,
    LlmAnalysisResult,
    LlmDiagnostics,
    LlmProvider,
    MealPayload,
    PendingEntryPayload,
    ProcessingStatus,
    TrackedEntry,
)
from healthflow.orchestrator import AnalysisOrchestrator
from healthflow.settings import AppSettings
from healthflow.status import final_status_for

FIXED_NOW = datetime(2026, 1, 15, 18, 0, tzinfo=timezone.utc)

MEAL_RESPONSE = json.dumps(
    {
        "schemaVersion": "1.0",
        "entryType": "Meal",
        "confidence": 0.9,
        "mealAnalysis": {
            "schemaVersion": "1.0",
            "foodItems": [{"name": "Pasta", "portionSize": "1 plate", "calories": 600, "confidence": 0.9}],
            "nutrition": {"totalCalories": 600},
            "healthInsights": {"healthScore": 6, "summary": "Carb heavy."},
            "confidence": 0.9,
            "warnings": [],
        },
    }
)


class StaticSettings:
    def __init__(self, settings: AppSettings):
        self.settings = settings

    def get_app_settings(self) -> AppSettings:
        return self.settings


class FakeLlmClient:
    def __init__(self, body: str | None = MEAL_RESPONSE, error: Exception | None = None):
        self.body = body
        self.error = error
        self.calls: list[dict] = []

    def invoke_analysis(self, entry, context, existing_insights_json=None, correction_text=None):
        self.calls.append(
            {
                "entry_id": entry.entry_id,
                "context": context,
                "existing": existing_insights_json,
                "correction": correction_text,
            }
        )
        if self.error is not None:
            raise self.error
        if self.body is None:
            return LlmAnalysisResult(analysis=None)
        return LlmAnalysisResult(
            analysis=EntryAnalysis(
                provider_id=context.provider.value,
                model=context.model_id,
                captured_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
                insights_json=self.body,
            ),
            diagnostics=LlmDiagnostics(prompt_token_count=10, completion_token_count=20, total_token_count=30),
        )

    def invoke_daily_summary(self, request, context, existing_summary_json=None):
        raise AssertionError("not expected")


class CountingEntries:
    def __init__(self, inner):
        self.inner = inner
        self.update_count = 0

    def update(self, entry: TrackedEntry) -> bool:
        self.update_count += 1
        return self.inner.update(entry)


class FakeSummaryService:
    def __init__(self) -> None:
        self.generated: list[int] = []

    def generate(self, summary_entry):
        self.generated.append(summary_entry.entry_id)
        return AnalysisInvocationResult.success()


def _openai_settings(api_key: str = "sk-test") -> AppSettings:
    return AppSettings(selected_provider=LlmProvider.OPENAI, api_keys={LlmProvider.OPENAI: api_key})


class OrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = HealthFlowDatabase(Path(self._tmp.name) / "healthflow.sqlite3")
        self.session = self.db.session()
        self.entries = CountingEntries(self.session.entries)

    def tearDown(self) -> None:
        self.session.close()
        self._tmp.cleanup()

    def _orchestrator(self, llm, settings: AppSettings | None = None, summary_service=None) -> AnalysisOrchestrator:
        return AnalysisOrchestrator(
            StaticSettings(settings or _openai_settings()),
            self.entries,
            self.session.analyses,
            llm,
            summary_service=summary_service,
            clock=lambda: FIXED_NOW,
        )

    def _pending_entry(self, description: str = "shared meal") -> TrackedEntry:
        entry = TrackedEntry(
            entry_type=EntryType.UNKNOWN,
            captured_at=datetime(2026, 1, 15, 17, 30, tzinfo=timezone.utc),
            payload=PendingEntryPayload(description=description),
        )
        self.session.entries.add(entry)
        return entry

    def test_pending_entry_is_reclassified_and_analysis_stored(self) -> None:
        llm = FakeLlmClient()
        entry = self._pending_entry()

        result = self._orchestrator(llm).process_entry(entry)

        self.assertTrue(result.is_queued)
        self.assertEqual(self.entries.update_count, 1)
        stored = self.session.entries.get_by_id(entry.entry_id)
        self.assertIs(stored.entry_type, EntryType.MEAL)
        self.assertIsInstance(stored.payload, MealPayload)
        self.assertEqual(stored.payload.description, "shared meal")

        analysis = self.session.analyses.get_by_entry_id(entry.entry_id)
        self.assertEqual(analysis.captured_at, FIXED_NOW)
        self.assertEqual(analysis.schema_version, "1.0")
        self.assertEqual(analysis.model, "gpt-4o-mini")
        self.assertIsNone(llm.calls[0]["existing"])
        self.assertIsNone(llm.calls[0]["correction"])

    def test_blank_correction_does_not_call_model(self) -> None:
        llm = FakeLlmClient()
        entry = self._pending_entry()

        result = self._orchestrator(llm).process_correction(entry, None, "   ")

        self.assertFalse(result.is_queued)
        self.assertTrue(result.user_message)
        self.assertEqual(llm.calls, [])

    def test_daily_summary_cannot_be_corrected(self) -> None:
        llm = FakeLlmClient()
        entry = self._pending_entry()
        entry.entry_type = EntryType.DAILY_SUMMARY

        result = self._orchestrator(llm).process_correction(entry, None, "more protein")

        self.assertFalse(result.is_queued)
        self.assertEqual(llm.calls, [])

    def test_missing_credentials_is_skipped(self) -> None:
        llm = FakeLlmClient()
        entry = self._pending_entry()

        result = self._orchestrator(llm, _openai_settings(api_key=" ")).process_entry(entry)

        self.assertTrue(result.requires_credentials)
        self.assertIs(final_status_for(result), ProcessingStatus.SKIPPED)
        self.assertEqual(llm.calls, [])

    def test_unsupported_provider_fails(self) -> None:
        llm = FakeLlmClient()
        entry = self._pending_entry()
        settings = AppSettings(selected_provider=LlmProvider.ANTHROPIC, api_keys={LlmProvider.ANTHROPIC: "key"})

        result = self._orchestrator(llm, settings).process_entry(entry)

        self.assertFalse(result.is_queued)
        self.assertFalse(result.requires_credentials)
        self.assertIs(final_status_for(result), ProcessingStatus.FAILED)

    def test_local_provider_needs_model_but_not_key(self) -> None:
        llm = FakeLlmClient()
        entry = self._pending_entry()

        missing_model = self._orchestrator(llm, AppSettings(selected_provider=LlmProvider.LOCAL)).process_entry(entry)
        self.assertFalse(missing_model.is_queued)
        self.assertFalse(missing_model.requires_credentials)

        settings = AppSettings(selected_provider=LlmProvider.LOCAL, model_preferences={LlmProvider.LOCAL: "llava"})
        result = self._orchestrator(llm, settings).process_entry(entry)
        self.assertTrue(result.is_queued)
        self.assertEqual(llm.calls[0]["context"].model_id, "llava")

    def test_correction_replaces_existing_analysis(self) -> None:
        entry = self._pending_entry()
        self._orchestrator(FakeLlmClient()).process_entry(entry)
        existing = self.session.analyses.get_by_entry_id(entry.entry_id)

        corrected_body = MEAL_RESPONSE.replace("Pasta", "Risotto")
        llm = FakeLlmClient(body=corrected_body)
        entry = self.session.entries.get_by_id(entry.entry_id)
        result = self._orchestrator(llm).process_correction(entry, existing, "It was risotto, not pasta")

        self.assertTrue(result.is_queued)
        self.assertEqual(llm.calls[0]["existing"], existing.insights_json)
        self.assertEqual(llm.calls[0]["correction"], "It was risotto, not pasta")
        stored = self.session.analyses.list_for_entry(entry.entry_id)
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].analysis_id, existing.analysis_id)
        self.assertEqual(stored[0].external_id, existing.external_id)
        self.assertIn("Risotto", stored[0].insights_json)

    def test_rerun_overwrites_stored_analysis(self) -> None:
        entry = self._pending_entry()
        self._orchestrator(FakeLlmClient()).process_entry(entry)
        first = self.session.analyses.get_by_entry_id(entry.entry_id)

        llm = FakeLlmClient(body=MEAL_RESPONSE.replace("Pasta", "Lasagna"))
        result = self._orchestrator(llm).process_entry(self.session.entries.get_by_id(entry.entry_id))

        self.assertTrue(result.is_queued)
        self.assertIsNone(llm.calls[0]["existing"])
        stored = self.session.analyses.list_for_entry(entry.entry_id)
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].analysis_id, first.analysis_id)
        self.assertEqual(stored[0].external_id, first.external_id)
        self.assertIn("Lasagna", stored[0].insights_json)

    def test_unparseable_response_is_stored_raw(self) -> None:
        llm = FakeLlmClient(body="I could not analyze this image.")
        entry = self._pending_entry()

        result = self._orchestrator(llm).process_entry(entry)

        self.assertTrue(result.is_queued)
        self.assertEqual(self.entries.update_count, 0)
        analysis = self.session.analyses.get_by_entry_id(entry.entry_id)
        self.assertEqual(analysis.insights_json, "I could not analyze this image.")
        self.assertEqual(analysis.schema_version, "unknown")

    def test_no_analysis_result(self) -> None:
        result = self._orchestrator(FakeLlmClient(body=None)).process_entry(self._pending_entry())
        self.assertFalse(result.is_queued)
        self.assertIs(final_status_for(result), ProcessingStatus.FAILED)

    def test_transport_error_becomes_error_result(self) -> None:
        llm = FakeLlmClient(error=LlmRequestError("AI request failed (500): boom"))
        entry = self._pending_entry()

        with self.assertLogs("healthflow.orchestrator", level="ERROR"):
            result = self._orchestrator(llm).process_entry(entry)

        self.assertFalse(result.is_queued)
        self.assertIsNone(self.session.analyses.get_by_entry_id(entry.entry_id))

    def test_daily_summary_entries_go_to_summary_service(self) -> None:
        summary_service = FakeSummaryService()
        llm = FakeLlmClient()
        entry = self._pending_entry()
        entry.entry_type = EntryType.DAILY_SUMMARY

        result = self._orchestrator(llm, summary_service=summary_service).process_entry(entry)

        self.assertTrue(result.is_queued)
        self.assertEqual(summary_service.generated, [entry.entry_id])
        self.assertEqual(llm.calls, [])


if __name__ == "__main__":
    unittest.main()
