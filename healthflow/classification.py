from __future__ import annotations

import logging
from typing import Protocol

from .models import (
    EntryPayload,
    EntryType,
    ExercisePayload,
    MealPayload,
    PendingEntryPayload,
    TrackedEntry,
)

logger = logging.getLogger(__name__)

CONVERTED_PAYLOAD_SCHEMA_VERSION = 1

_CLASSIFIABLE = {
    member.value.lower(): member
    for member in (
        EntryType.MEAL,
        EntryType.EXERCISE,
        EntryType.SLEEP,
        EntryType.OTHER,
    )
}


class EntryUpdater(Protocol):
    def update(self, entry: TrackedEntry) -> None: ...


def normalize_entry_type(value: str | None) -> EntryType | None:
    """Map a model-detected category onto the closed set.

    Returns ``None`` for blank or unrecognized values. "Unknown" is not a
    classification, and "DailySummary" is only ever assigned by the summary
    flow, so both give ``None`` too.
    """
    key = (value or "").strip().lower()
    if not key:
        return None
    return _CLASSIFIABLE.get(key)


def convert_pending_payload(
    entry: TrackedEntry,
    pending: PendingEntryPayload,
    detected: EntryType,
) -> EntryPayload:
    if detected is EntryType.MEAL:
        return MealPayload(
            description=pending.description,
            preview_blob_path=pending.preview_blob_path or entry.blob_path,
            schema_version=CONVERTED_PAYLOAD_SCHEMA_VERSION,
        )
    if detected is EntryType.EXERCISE:
        return ExercisePayload(
            description=pending.description,
            preview_blob_path=pending.preview_blob_path or entry.blob_path,
            screenshot_blob_path=entry.blob_path or pending.preview_blob_path,
            schema_version=CONVERTED_PAYLOAD_SCHEMA_VERSION,
        )
    # Sleep and Other keep the pending shape until they get dedicated payloads.
    return pending


def apply_classification(entry: TrackedEntry, detected: EntryType, repository: EntryUpdater) -> bool:
    """Rewrite the entry's type and payload for ``detected``; return whether it was persisted."""
    original_type = entry.entry_type
    payload_converted = False

    if isinstance(entry.payload, PendingEntryPayload):
        converted = convert_pending_payload(entry, entry.payload, detected)
        if converted is not entry.payload:
            entry.payload = converted
            entry.data_schema_version = CONVERTED_PAYLOAD_SCHEMA_VERSION
            payload_converted = True

    type_changed = original_type is not detected
    if not type_changed and not payload_converted:
        return False

    entry.entry_type = detected
    repository.update(entry)

    logger.info(
        "Updated entry %s classification to %s (payload=%s, schemaVersion=%s).",
        entry.entry_id,
        entry.entry_type.value,
        type(entry.payload).__name__,
        entry.data_schema_version,
    )
    return True


def classify_entry(entry: TrackedEntry, detected_value: str | None, repository: EntryUpdater) -> bool:
    detected = normalize_entry_type(detected_value)
    if detected is None:
        logger.warning(
            "Ignoring unrecognized entry type %r detected for entry %s.",
            detected_value,
            entry.entry_id,
        )
        return False
    return apply_classification(entry, detected, repository)
