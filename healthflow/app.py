from __future__ import annotations

import argparse
import logging
import shutil
from concurrent.futures import Future
from datetime import date, datetime
from pathlib import Path
from types import SimpleNamespace

from . import __version__
from .background import AnalysisScope, BackgroundAnalysisService, StatusBroadcaster, reset_interrupted
from .config import Config
from .daily_summary import DailySummaryService, request_daily_summary
from .database import HealthFlowDatabase
from .llm import LlmClient, build_llm_client
from .logs import configure_logging
from .models import (
    AnalysisInvocationResult,
    EntryStatusChanged,
    EntryType,
    LlmProvider,
    PendingEntryPayload,
    TrackedEntry,
)
from .orchestrator import AnalysisOrchestrator
from .paths import data_directory, database_path, ensure_directories, log_path, new_blob_path
from .settings import SqliteSettingsRepository, resolve_model_id
from .timeutil import capture_time_zone_metadata, ensure_utc, resolve_time_zone, to_original_local, utc_now

logger = logging.getLogger(__name__)


class HealthFlowApp:
    """Wires the database, settings, model client and background scheduler together."""

    def __init__(
        self,
        config: Config | None = None,
        db: HealthFlowDatabase | None = None,
        llm_client: LlmClient | None = None,
    ):
        self.config = config or Config()
        self.db = db or HealthFlowDatabase(database_path())
        self.settings = SqliteSettingsRepository(self.db)
        self.llm_client = llm_client or build_llm_client(timeout=self.config.request_timeout_seconds)
        self.service = BackgroundAnalysisService(
            self.open_scope,
            max_workers=self.config.max_concurrent_analyses,
            broadcaster=StatusBroadcaster(self.config.status_queue_size),
        )

    def open_scope(self) -> AnalysisScope:
        session = self.db.session()
        summaries = DailySummaryService(self.settings, session.entries, session.analyses, self.llm_client)
        orchestrator = AnalysisOrchestrator(
            self.settings,
            session.entries,
            session.analyses,
            self.llm_client,
            summary_service=summaries,
        )
        return AnalysisScope(
            entries=session.entries,
            orchestrator=orchestrator,
            summaries=summaries,
            analyses=session.analyses,
            on_close=session.close,
        )

    def recover(self) -> list[int]:
        with self.db.session() as session:
            return reset_interrupted(session.entries)

    def add_entry(
        self,
        description: str | None = None,
        image_path: Path | None = None,
        captured_at: datetime | None = None,
    ) -> tuple[TrackedEntry, Future]:
        captured = ensure_utc(captured_at) if captured_at is not None else utc_now()
        zone_id, offset = capture_time_zone_metadata(captured)

        blob_path = None
        if image_path is not None:
            blob_path = new_blob_path(to_original_local(captured, zone_id, offset), Path(image_path).suffix)
            shutil.copyfile(image_path, data_directory() / blob_path)

        entry = TrackedEntry(
            entry_type=EntryType.UNKNOWN,
            captured_at=captured,
            payload=PendingEntryPayload(description=description, preview_blob_path=blob_path),
            captured_at_time_zone_id=zone_id,
            captured_at_offset_minutes=offset,
            blob_path=blob_path,
        )
        with self.db.session() as session:
            session.entries.add(entry)
        logger.info("Captured entry %s.", entry.entry_id)
        return entry, self.service.queue(entry.entry_id)

    def correct_entry(self, entry_id: int, correction_text: str) -> AnalysisInvocationResult:
        with self.open_scope() as scope:
            entry = scope.entries.get_by_id(entry_id)
            if entry is None:
                return AnalysisInvocationResult.invalid_request(f"Entry {entry_id} does not exist.")
            existing = scope.analyses.get_by_entry_id(entry_id)
            return scope.orchestrator.process_correction(entry, existing, correction_text)

    def request_summary(self, now: datetime | None = None) -> tuple[TrackedEntry, Future | None]:
        futures: list[Future] = []
        scheduler = SimpleNamespace(queue=lambda entry_id: futures.append(self.service.queue(entry_id)))
        with self.db.session() as session:
            summary = request_daily_summary(session.entries, scheduler, now=now)
        return summary, (futures[0] if futures else None)

    def entries_for_day(self, local_date: date) -> list[TrackedEntry]:
        zone_id, offset = capture_time_zone_metadata()
        with self.db.session() as session:
            return session.entries.list_by_day(local_date, resolve_time_zone(zone_id, offset))

    def shutdown(self) -> None:
        self.service.shutdown(wait=True)


def _print_status(event: EntryStatusChanged) -> None:
    print(f"entry {event.entry_id}: {event.status.value}")


def _mask(value: str) -> str:
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def _cmd_add(app: HealthFlowApp, args: argparse.Namespace) -> int:
    image = Path(args.image) if args.image else None
    if image is not None and not image.is_file():
        print(f"Image not found: {image}")
        return 2
    entry, future = app.add_entry(description=args.description, image_path=image)
    print(f"Queued entry {entry.entry_id}")
    future.result()
    return 0


def _cmd_status(app: HealthFlowApp, args: argparse.Namespace) -> int:
    day = date.fromisoformat(args.date) if args.date else datetime.now().astimezone().date()
    entries = app.entries_for_day(day)
    if not entries:
        print(f"No entries for {day.isoformat()}")
        return 0
    for entry in entries:
        local = to_original_local(entry.captured_at, entry.captured_at_time_zone_id, entry.captured_at_offset_minutes)
        description = getattr(entry.payload, "description", None) or ""
        print(
            f"{entry.entry_id:>5}  {local.strftime('%H:%M')}  {entry.entry_type.value:<12} "
            f"{entry.processing_status.value:<10} {description}".rstrip()
        )
    return 0


def _cmd_retry(app: HealthFlowApp, args: argparse.Namespace) -> int:
    future = app.service.retry(args.entry_id)
    if future is None:
        print(f"Entry {args.entry_id} cannot be retried")
        return 1
    future.result()
    return 0


def _cmd_correct(app: HealthFlowApp, args: argparse.Namespace) -> int:
    result = app.correct_entry(args.entry_id, args.text)
    if not result.is_queued:
        print(result.user_message or "Correction failed")
        return 1
    print(f"Updated analysis for entry {args.entry_id}")
    return 0


def _cmd_summary(app: HealthFlowApp, args: argparse.Namespace) -> int:
    summary, future = app.request_summary()
    payload = summary.payload
    print(f"Queued daily summary {summary.entry_id} ({getattr(payload, 'meal_count', 0)} meals)")
    if future is not None:
        future.result()
    return 0


def _cmd_settings(app: HealthFlowApp, args: argparse.Namespace) -> int:
    settings = app.settings.get_app_settings()
    if args.provider:
        provider = LlmProvider.parse(args.provider)
        if provider is None:
            print(f"Unknown provider: {args.provider}")
            return 2
        settings.selected_provider = provider
    provider = settings.selected_provider
    changed = bool(args.provider)
    if args.model is not None:
        settings.model_preferences[provider] = args.model.strip()
        changed = True
    if args.api_key is not None:
        settings.api_keys[provider] = args.api_key.strip()
        changed = True
    if args.endpoint is not None:
        settings.endpoints[provider] = args.endpoint.strip()
        changed = True
    if changed:
        app.settings.save_app_settings(settings)

    print(f"provider: {provider.value}")
    print(f"model:    {resolve_model_id(settings) or '(not set)'}")
    print(f"api key:  {_mask(settings.api_key_for(provider))}")
    print(f"endpoint: {settings.endpoint_for(provider) or '(default)'}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="healthflow")
    parser.add_argument("--version", action="store_true", help="Print app version and exit")
    subparsers = parser.add_subparsers(dest="command")

    add = subparsers.add_parser("add", help="Capture an entry and analyze it")
    add.add_argument("--description", default=None, help="What the capture shows")
    add.add_argument("--image", default=None, help="Photo or screenshot to attach")
    add.set_defaults(handler=_cmd_add)

    status = subparsers.add_parser("status", help="List entries for a local day")
    status.add_argument("--date", default=None, help="Local date as YYYY-MM-DD (default: today)")
    status.set_defaults(handler=_cmd_status)

    retry = subparsers.add_parser("retry", help="Retry a failed or skipped entry")
    retry.add_argument("entry_id", type=int)
    retry.set_defaults(handler=_cmd_retry)

    correct = subparsers.add_parser("correct", help="Correct an entry's analysis")
    correct.add_argument("entry_id", type=int)
    correct.add_argument("text", help="What the analysis got wrong")
    correct.set_defaults(handler=_cmd_correct)

    summary = subparsers.add_parser("summary", help="Generate today's daily summary")
    summary.set_defaults(handler=_cmd_summary)

    settings = subparsers.add_parser("settings", help="Show or change provider settings")
    settings.add_argument("--provider", default=None, choices=[provider.value for provider in LlmProvider])
    settings.add_argument("--model", default=None)
    settings.add_argument("--api-key", dest="api_key", default=None)
    settings.add_argument("--endpoint", default=None)
    settings.set_defaults(handler=_cmd_settings)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(__version__)
        return 0
    if not getattr(args, "handler", None):
        parser.print_help()
        return 0

    ensure_directories()
    config = Config()
    configure_logging(config.log_level, log_path() if config.log_to_file else None)

    app = HealthFlowApp(config)
    app.recover()
    app.service.subscribe(_print_status)
    try:
        return args.handler(app, args)
    finally:
        app.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
