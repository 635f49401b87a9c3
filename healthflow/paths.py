from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

APP_DIR_NAME = "HealthFlow"
DATA_DIR_ENV = "HEALTHFLOW_DATA_DIR"


def data_directory() -> Path:
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        return Path(local_appdata) / APP_DIR_NAME
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data) / APP_DIR_NAME
    return Path.home() / ".local" / "share" / APP_DIR_NAME


def blobs_directory() -> Path:
    return data_directory() / "entries"


def database_path() -> Path:
    return data_directory() / "healthflow.sqlite3"


def config_path() -> Path:
    return data_directory() / "config.json"


def logs_directory() -> Path:
    return data_directory() / "logs"


def log_path() -> Path:
    return logs_directory() / "healthflow.log"


def ensure_directories() -> None:
    blobs_directory().mkdir(parents=True, exist_ok=True)
    logs_directory().mkdir(parents=True, exist_ok=True)


def new_blob_path(captured_at: datetime, suffix: str = ".jpg") -> str:
    """Reserve a blob location for a capture, relative to the data directory."""
    day_folder = blobs_directory() / captured_at.strftime("%Y-%m-%d")
    day_folder.mkdir(parents=True, exist_ok=True)
    filename = captured_at.strftime("%Y%m%d_%H%M%S_%f") + (suffix or ".jpg").lower()
    return (day_folder / filename).relative_to(data_directory()).as_posix()


def resolve_blob_path(blob_path: str | None) -> Path | None:
    """Map a stored blob reference to a file on disk.

    Blob references are stored relative to the data directory; absolute
    references are returned unchanged.
    """
    if not blob_path:
        return None
    candidate = Path(blob_path)
    if candidate.is_absolute():
        return candidate
    return data_directory() / candidate
