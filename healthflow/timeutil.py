from __future__ import annotations

import logging
import os
import time as _time
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class SystemLocalTimeZone(tzinfo):
    """The host's local zone, evaluated per instant so DST rules apply."""

    def utcoffset(self, dt: datetime | None) -> timedelta:
        if dt is None:
            return datetime.now().astimezone().utcoffset() or timedelta(0)
        naive = dt.replace(tzinfo=None)
        return naive.astimezone().utcoffset() or timedelta(0)

    def dst(self, dt: datetime | None) -> timedelta:
        return timedelta(0)

    def tzname(self, dt: datetime | None) -> str:
        if dt is None:
            return _time.tzname[0]
        return dt.replace(tzinfo=None).astimezone().tzname() or _time.tzname[0]

    def fromutc(self, dt: datetime) -> datetime:
        instant = dt.replace(tzinfo=timezone.utc)
        naive = instant.astimezone().replace(tzinfo=None)
        # The second pass through a repeated hour maps back only with fold=1.
        if naive.replace(microsecond=0).timestamp() != instant.replace(microsecond=0).timestamp():
            naive = naive.replace(fold=1)
        return naive.replace(tzinfo=self)

    def __repr__(self) -> str:
        return "SystemLocalTimeZone()"


SYSTEM_LOCAL = SystemLocalTimeZone()


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_time_zone(time_zone_id: str | None = None, offset_minutes: int | None = None) -> tzinfo:
    """Resolve capture metadata to a zone: named zone, then fixed offset, then system local."""
    zone_key = (time_zone_id or "").strip()
    if zone_key:
        try:
            return ZoneInfo(zone_key)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            logger.debug("Unknown time zone id %r; falling back to offset metadata.", zone_key)

    if offset_minutes is not None:
        try:
            return timezone(timedelta(minutes=int(offset_minutes)))
        except (TypeError, ValueError, OverflowError):
            logger.debug("Invalid UTC offset %r; falling back to system local time.", offset_minutes)

    return system_local_zone()


def utc_offset_minutes(tz: tzinfo, instant_utc: datetime) -> int:
    local = ensure_utc(instant_utc).astimezone(tz)
    offset = local.utcoffset() or timedelta(0)
    return int(offset.total_seconds() // 60)


def to_original_local(
    instant_utc: datetime,
    time_zone_id: str | None = None,
    offset_minutes: int | None = None,
) -> datetime:
    return ensure_utc(instant_utc).astimezone(resolve_time_zone(time_zone_id, offset_minutes))


def local_date_for(
    instant_utc: datetime,
    time_zone_id: str | None = None,
    offset_minutes: int | None = None,
) -> date:
    return to_original_local(instant_utc, time_zone_id, offset_minutes).date()


def utc_bounds_for_local_day(local_date: date, tz: tzinfo | None = None) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` UTC range covering ``local_date`` in ``tz``."""
    zone = tz if tz is not None else system_local_zone()
    start_local = datetime.combine(local_date, time.min, tzinfo=zone)
    end_local = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=zone)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def day_bounds_for(
    instant_utc: datetime,
    time_zone_id: str | None = None,
    offset_minutes: int | None = None,
) -> tuple[datetime, datetime]:
    """Return the UTC bounds of the local calendar day that contains ``instant_utc``."""
    tz = resolve_time_zone(time_zone_id, offset_minutes)
    local_date = ensure_utc(instant_utc).astimezone(tz).date()
    return utc_bounds_for_local_day(local_date, tz)


def system_time_zone_id() -> str | None:
    configured = os.environ.get("TZ", "").strip().lstrip(":")
    if configured:
        try:
            return ZoneInfo(configured).key
        except (ZoneInfoNotFoundError, ValueError, OSError):
            pass

    localtime = "/etc/localtime"
    try:
        target = os.path.realpath(localtime)
    except OSError:
        return None
    marker = "zoneinfo" + os.sep
    if marker in target:
        candidate = target.split(marker, 1)[1]
        try:
            return ZoneInfo(candidate).key
        except (ZoneInfoNotFoundError, ValueError, OSError):
            return None
    return None


def capture_time_zone_metadata(
    instant_utc: datetime | None = None,
    tz: tzinfo | None = None,
) -> tuple[str | None, int]:
    """Metadata recorded alongside a capture: (zone id if known, UTC offset minutes)."""
    instant = ensure_utc(instant_utc) if instant_utc is not None else utc_now()
    if tz is None:
        zone_id = system_time_zone_id()
        zone = system_local_zone()
    else:
        zone = tz
        zone_id = tz.key if isinstance(tz, ZoneInfo) else None
    return zone_id, utc_offset_minutes(zone, instant)


def system_local_zone() -> tzinfo:
    """The host zone as a ``ZoneInfo`` when its id is known, else ``SYSTEM_LOCAL``."""
    zone_id = system_time_zone_id()
    if zone_id:
        return ZoneInfo(zone_id)
    return SYSTEM_LOCAL
