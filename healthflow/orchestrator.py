from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Protocol

from .classification import EntryUpdater, classify_entry
from .llm import LlmClient
from .models import (
    AnalysisInvocationResult,
    EntryAnalysis,
    EntryType,
    LlmDiagnostics,
    TrackedEntry,
)
from .results import AnalysisParseError, parse_unified_result, validate_unified_result
from .settings import ANALYSIS_PURPOSE, SettingsProvider, resolve_request_context
from .timeutil import utc_now

logger = logging.getLogger(__name__)


class AnalysisWriter(Protocol):
    def add(self, analysis: EntryAnalysis) -> int: ...

    def update(self, analysis: EntryAnalysis) -> bool: ...

    def get_by_entry_id(self, entry_id: int) -> EntryAnalysis | None: ...


class SummaryGenerator(Protocol):
    def generate(self, summary_entry: TrackedEntry) -> AnalysisInvocationResult: ...


class AnalysisOrchestrator:
    def __init__(
        self,
        settings_provider: SettingsProvider,
        entry_repository: EntryUpdater,
        analysis_repository: AnalysisWriter,
        llm_client: LlmClient,
        summary_service: SummaryGenerator | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings_provider = settings_provider
        self._entry_repository = entry_repository
        self._analysis_repository = analysis_repository
        self._llm_client = llm_client
        self._summary_service = summary_service
        self._clock = clock or utc_now

    def process_entry(self, entry: TrackedEntry) -> AnalysisInvocationResult:
        if entry.entry_type is EntryType.DAILY_SUMMARY:
            if self._summary_service is None:
                logger.error("Entry %s is a daily summary but no summary service is configured.", entry.entry_id)
                return AnalysisInvocationResult.error()
            return self._summary_service.generate(entry)
        return self._run_unified_analysis(entry, existing_analysis=None, correction_text=None)

    def process_correction(
        self,
        entry: TrackedEntry,
        existing_analysis: EntryAnalysis | None,
        correction_text: str | None,
    ) -> AnalysisInvocationResult:
        if not correction_text or not correction_text.strip():
            return AnalysisInvocationResult.invalid_request("Describe what should change before requesting a correction.")
        if entry.entry_type is EntryType.DAILY_SUMMARY:
            return AnalysisInvocationResult.invalid_request(
                "Daily summaries cannot be corrected; regenerate the summary instead."
            )
        return self._run_unified_analysis(entry, existing_analysis, correction_text.strip())

    def _run_unified_analysis(
        self,
        entry: TrackedEntry,
        existing_analysis: EntryAnalysis | None,
        correction_text: str | None,
    ) -> AnalysisInvocationResult:
        try:
            context = resolve_request_context(self._settings_provider.get_app_settings(), ANALYSIS_PURPOSE)
            if isinstance(context, AnalysisInvocationResult):
                logger.info("Skipping analysis for entry %s: %s", entry.entry_id, context.user_message)
                return context

            llm_result = self._llm_client.invoke_analysis(
                entry,
                context,
                existing_analysis.insights_json if existing_analysis is not None else None,
                correction_text,
            )
            analysis = llm_result.analysis
            if analysis is None:
                logger.warning("Model returned no analysis for entry %s.", entry.entry_id)
                return AnalysisInvocationResult.no_analysis()

            analysis.entry_id = entry.entry_id
            analysis.captured_at = self._clock()

            try:
                unified = parse_unified_result(analysis.insights_json)
            except AnalysisParseError as exc:
                logger.warning("Storing unparsed analysis for entry %s: %s", entry.entry_id, exc)
            else:
                analysis.schema_version = unified.schema_version
                classify_entry(entry, unified.entry_type, self._entry_repository)
                validation = validate_unified_result(unified)
                if not validation.is_valid:
                    logger.error(
                        "Analysis validation failed for entry %s. Errors: %s",
                        entry.entry_id,
                        "; ".join(validation.errors),
                    )
                elif validation.warnings:
                    logger.warning(
                        "Analysis validation warnings for entry %s: %s",
                        entry.entry_id,
                        "; ".join(validation.warnings),
                    )

            # One analysis per entry; a re-run overwrites the stored row.
            stored = existing_analysis or self._analysis_repository.get_by_entry_id(entry.entry_id)
            if stored is None:
                self._analysis_repository.add(analysis)
            else:
                analysis.analysis_id = stored.analysis_id
                analysis.external_id = stored.external_id
                self._analysis_repository.update(analysis)

            _log_diagnostics("Stored analysis for entry %s" % entry.entry_id, analysis.model, llm_result.diagnostics)
            return AnalysisInvocationResult.success()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to process analysis for entry %s.", entry.entry_id)
            return AnalysisInvocationResult.error()


def _log_diagnostics(prefix: str, model: str, diagnostics: LlmDiagnostics | None) -> None:
    if diagnostics is None:
        return
    logger.info(
        "%s using model %s. Tokens used: prompt=%s, completion=%s, total=%s.",
        prefix,
        model,
        diagnostics.prompt_token_count,
        diagnostics.completion_token_count,
        diagnostics.total_token_count,
    )
